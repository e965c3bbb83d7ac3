# Drone Gateway
# File: drone_gateway.py

"""
Bridge between the message bus and the dispatch core.

Inbound heartbeats and status reports are validated, applied and
acknowledged; drones carrying an order also produce a live location broadcast
for the order. Outbound commands go out on the drone's command topic with
acknowledged delivery. Errors never escape a handler.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from errors import DispatchError
from kafka_integration import KafkaMessageBus, QOS_AT_LEAST_ONCE, QOS_EXACTLY_ONCE
from messages import (
    Command, CommandType, CurrentJobInfo, EmergencyLandPayload, GeoPoint,
    HeartbeatAck, HeartbeatMessage, LocationBroadcast, ReturnToBasePayload,
    RouteChangePayload, SpeedLimitPayload, StatusAck, StatusMessage, Topics,
    epoch_ms,
)
from models import DroneStatus, Location
from rescue_workflow import BreakageWorkflow
from telemetry import HeartbeatResult, TelemetryProcessor

logger = logging.getLogger(__name__)


class DroneGateway:
    """Message handlers for drone telemetry and the command channel"""

    def __init__(self, bus: KafkaMessageBus, telemetry: TelemetryProcessor,
                 breakage: BreakageWorkflow, metrics=None):
        self.bus = bus
        self.telemetry = telemetry
        self.breakage = breakage
        self.metrics = metrics

    def register_handlers(self):
        self.bus.register_handler(Topics.all_drones_heartbeat(), self.handle_heartbeat)
        self.bus.register_handler(Topics.all_drones_status(), self.handle_status)
        logger.info("Drone message handlers registered")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_heartbeat(self, topic: str, payload: Dict[str, Any]) -> Optional[HeartbeatResult]:
        """Apply a heartbeat, acknowledge it and broadcast the order location"""
        drone_id = self._drone_id(topic, payload)
        if drone_id is None:
            return None

        try:
            message = HeartbeatMessage.model_validate(payload)
            result = self.telemetry.process_heartbeat(
                drone_id,
                message.location.to_location(),
                message.battery,
                message.speed,
                reported_at=message.reported_at(),
            )
        except ValidationError as e:
            self._drop(topic, f"invalid heartbeat: {e.error_count()} error(s)")
            return None
        except DispatchError as e:
            self._drop(topic, e.message)
            return None

        logger.debug(f"Heartbeat from drone {drone_id} ({result.status.value})")
        self.bus.publish(Topics.heartbeat_ack(drone_id), self._build_ack(result), qos=QOS_AT_LEAST_ONCE)

        if result.current_job is not None:
            self.publish_order_location(result)
        return result

    def handle_status(self, topic: str, payload: Dict[str, Any]):
        """Process a status change; BROKEN with a location triggers the rescue workflow"""
        drone_id = self._drone_id(topic, payload)
        if drone_id is None:
            return None

        try:
            message = StatusMessage.model_validate(payload)
        except ValidationError as e:
            self._drop(topic, f"invalid status report: {e.error_count()} error(s)")
            return None

        logger.info(f"Status update from drone {drone_id}: {message.status.value}")
        report = None
        ack = StatusAck(received=True)

        if message.status == DroneStatus.BROKEN:
            if message.location is None:
                ack.message = "Broken report ignored: location required"
            else:
                try:
                    report = self.breakage.report_broken(
                        drone_id,
                        message.location.to_location(),
                        message.reason or "Status reported via message bus",
                        message.severity,
                    )
                    ack.message = report.message
                except DispatchError as e:
                    self._drop(topic, e.message)
                    return None

        self.bus.publish(Topics.status_ack(drone_id), ack, qos=QOS_AT_LEAST_ONCE)
        return report

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def publish_order_location(self, result: HeartbeatResult) -> bool:
        """Live tracking update for the order the drone is carrying"""
        job = result.current_job
        update = LocationBroadcast(
            order_id=job.order_id,
            drone_id=result.drone_id,
            location=GeoPoint.from_location(result.location),
            speed=result.speed,
            eta=epoch_ms(job.eta),
        )
        return self.bus.publish(Topics.order_location(job.order_id), update, qos=QOS_AT_LEAST_ONCE)

    def send_command(self, drone_id: str, command: Command) -> bool:
        """Publish a command with the highest delivery assurance"""
        sent = self.bus.publish(Topics.drone_commands(drone_id), command, qos=QOS_EXACTLY_ONCE, key=drone_id)
        if sent:
            logger.info(f"Command sent to drone {drone_id}: {command.type.value} ({command.command_id})")
            self._count('commands_sent')
        else:
            logger.error(f"Command {command.type.value} to drone {drone_id} was not delivered")
        return sent

    def send_route_change(self, drone_id: str, order_id: str, destination: Location, reason: str) -> bool:
        payload = RouteChangePayload(
            order_id=order_id,
            new_destination=GeoPoint.from_location(destination),
            reason=reason,
        )
        return self.send_command(drone_id, Command.build(CommandType.ROUTE_CHANGE, payload))

    def send_return_to_base(self, drone_id: str, base: Location, urgent: bool = False) -> bool:
        payload = ReturnToBasePayload(base_location=GeoPoint.from_location(base), urgent=urgent)
        return self.send_command(drone_id, Command.build(CommandType.RETURN_TO_BASE, payload))

    def send_emergency_land(self, drone_id: str, reason: str) -> bool:
        return self.send_command(
            drone_id, Command.build(CommandType.EMERGENCY_LAND, EmergencyLandPayload(reason=reason))
        )

    def send_speed_limit(self, drone_id: str, max_speed: float, reason: str) -> bool:
        payload = SpeedLimitPayload(max_speed=max_speed, reason=reason)
        return self.send_command(drone_id, Command.build(CommandType.SPEED_LIMIT, payload))

    def request_status(self, drone_id: str) -> bool:
        return self.send_command(drone_id, Command.build(CommandType.STATUS_REQUEST))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_ack(self, result: HeartbeatResult) -> HeartbeatAck:
        ack = HeartbeatAck(
            status=result.ack_status,
            instructions=result.instructions,
            server_time=epoch_ms(result.server_time),
        )
        if result.current_job is not None:
            ack.current_job = CurrentJobInfo(
                order_id=result.current_job.order_id,
                dest_lat=result.current_job.destination.latitude,
                dest_lon=result.current_job.destination.longitude,
                eta=epoch_ms(result.current_job.eta),
            )
        return ack

    def _drone_id(self, topic: str, payload: Dict[str, Any]) -> Optional[str]:
        drone_id = Topics.extract_drone_id(topic)
        if drone_id is None:
            self._drop(topic, "could not extract drone id from topic")
            return None
        claimed = payload.get('droneId')
        if claimed is not None and claimed != drone_id:
            self._drop(topic, f"payload droneId {claimed} does not match topic")
            return None
        return drone_id

    def _drop(self, topic: str, reason: str):
        logger.warning(f"Dropping message on {topic}: {reason}")
        self._count('messages_dropped')

    def _count(self, name: str):
        if self.metrics is not None:
            self.metrics.record_counter(name)
