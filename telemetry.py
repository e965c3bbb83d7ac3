# Telemetry Processor
# File: telemetry.py

"""
Heartbeat ingestion and geofence-gated pickup/delivery confirmation.

Heartbeats are latest-value signals: a heartbeat that is not newer than the
last applied one is acknowledged but changes nothing, so at-least-once
delivery from the transport is safe.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from config import DispatchConfig
from errors import ConflictError, ErrorCodes, NotFoundError, ValidationFailure
from fleet_registry import FleetRegistry
from geo_utils import distance_between, estimate_eta, within_radius
from models import (
    Actor, Drone, DroneStatus, JobType, Location, Order, OrderStatus,
    require_drone_or_admin,
)
from order_ledger import OrderLedger
from state_store import DRONES, ORDERS, StateStore

logger = logging.getLogger(__name__)

BATTERY_LOW_INSTRUCTION = "Battery low. Return to base after delivery."


@dataclass
class CurrentJob:
    order_id: str
    destination: Location
    eta: datetime


@dataclass
class HeartbeatResult:
    drone_id: str
    status: DroneStatus
    applied: bool
    location: Location
    speed: float
    current_job: Optional[CurrentJob] = None
    instructions: Optional[str] = None
    server_time: datetime = field(default_factory=datetime.now)

    @property
    def ack_status(self) -> str:
        return "warning" if self.instructions else "ok"


@dataclass
class PickupResult:
    order_id: str
    status: OrderStatus
    job_type: Optional[JobType]
    destination: Location
    estimated_delivery_time: datetime


@dataclass
class DeliveryResult:
    order_id: str
    drone_id: str
    status: OrderStatus
    completed_at: datetime
    failure_reason: Optional[str] = None


class TelemetryProcessor:
    """Applies drone telemetry and drone-reported delivery milestones"""

    def __init__(self, store: StateStore, fleet: FleetRegistry, ledger: OrderLedger,
                 config: DispatchConfig, metrics=None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.fleet = fleet
        self.ledger = ledger
        self.config = config
        self.metrics = metrics
        self.clock = clock or datetime.now

    # ------------------------------------------------------------------
    # Heartbeats
    # ------------------------------------------------------------------

    def process_heartbeat(self, drone_id: str, location: Location, battery: float,
                          speed: float, reported_at: Optional[datetime] = None,
                          actor: Optional[Actor] = None) -> HeartbeatResult:
        """
        Apply one heartbeat and build the acknowledgement

        Args:
            drone_id: Reporting drone
            location: Reported position
            battery: Battery percentage (0-100)
            speed: Ground speed in km/h
            reported_at: Drone-side timestamp; server time when absent

        Returns:
            HeartbeatResult with the derived status, the ETA to the current
            order's destination and any operator instruction
        """
        require_drone_or_admin(actor, drone_id)
        started = time.time()
        drone, applied = self.fleet.update_telemetry(drone_id, location, battery, speed, reported_at)
        self._count('heartbeats_processed' if applied else 'heartbeats_stale')

        result = HeartbeatResult(
            drone_id=drone.id,
            status=drone.status,
            applied=applied,
            location=drone.current_location,
            speed=drone.speed,
            server_time=self.clock(),
        )

        if drone.current_order_id:
            order = self.store.get(ORDERS, drone.current_order_id)
            if order is not None:
                result.current_job = CurrentJob(
                    order_id=order.id,
                    destination=order.destination,
                    eta=self._eta(drone.current_location, order.destination),
                )

        if drone.battery_level < self.config.low_battery_threshold:
            result.instructions = BATTERY_LOW_INSTRUCTION
            logger.warning(f"Drone {drone_id} battery low ({drone.battery_level:.0f}%)")

        if self.metrics is not None:
            self.metrics.record_histogram('heartbeat_processing_ms', (time.time() - started) * 1000)
        return result

    # ------------------------------------------------------------------
    # Pickup / delivery milestones
    # ------------------------------------------------------------------

    def confirm_pickup(self, drone_id: str, order_id: str, location: Location,
                       actor: Optional[Actor] = None) -> PickupResult:
        """
        Drone grabs the package at the pickup point

        The pickup point is the current order origin for a delivery and the
        breakage location recorded on the job for a rescue. The order moves through
        PICKED_UP to IN_TRANSIT.

        Raises:
            ValidationFailure: drone is outside the location tolerance
            ConflictError: order is not assigned to this drone
        """
        require_drone_or_admin(actor, drone_id)
        with self.store.lock(DRONES, drone_id):
            self._require_carrier(drone_id, order_id)
            with self.store.lock(ORDERS, order_id):
                order = self.store.require(ORDERS, order_id)
                job = self.ledger.open_job_for_order(order_id)
                if job is not None and job.type == JobType.RESCUE:
                    expected = job.pickup_location
                else:
                    expected = order.origin
                self._check_geofence(drone_id, location, expected, "pickup")

                now = self.clock()
                eta = self._eta(location, order.destination)
                self.ledger.transition(order_id, OrderStatus.PICKED_UP, at=now)
                order = self.ledger.transition(
                    order_id, OrderStatus.IN_TRANSIT, at=now,
                    estimated_delivery_time=eta,
                )

        logger.info(f"Drone {drone_id} picked up order {order_id}")
        return PickupResult(
            order_id=order_id,
            status=order.status,
            job_type=job.type if job else None,
            destination=order.destination,
            estimated_delivery_time=eta,
        )

    def confirm_delivery(self, drone_id: str, order_id: str, location: Location,
                         actor: Optional[Actor] = None) -> DeliveryResult:
        """Drone drops the package at the destination"""
        require_drone_or_admin(actor, drone_id)
        with self.store.lock(DRONES, drone_id):
            self._require_carrier(drone_id, order_id)
            with self.store.lock(ORDERS, order_id):
                order = self.store.require(ORDERS, order_id)
                self._check_geofence(drone_id, location, order.destination, "delivery")

                now = self.clock()
                order = self.ledger.transition(order_id, OrderStatus.DELIVERED, at=now)
                self._complete_job(order_id)
            self.fleet.release_order(drone_id, delivered=True)

        self._count('deliveries_completed')
        logger.info(f"Order {order_id} delivered by {drone_id}")
        return DeliveryResult(order_id=order_id, drone_id=drone_id, status=order.status, completed_at=now)

    def report_delivery_failure(self, drone_id: str, order_id: str, reason: str,
                                actor: Optional[Actor] = None) -> DeliveryResult:
        """Drone gives up on its order; no geofence applies"""
        require_drone_or_admin(actor, drone_id)
        if not reason:
            raise ValidationFailure("A failure reason is required")

        with self.store.lock(DRONES, drone_id):
            self._require_carrier(drone_id, order_id)
            with self.store.lock(ORDERS, order_id):
                now = self.clock()
                order = self.ledger.transition(order_id, OrderStatus.FAILED, at=now, reason=reason)
                self._complete_job(order_id)
            self.fleet.release_order(drone_id, delivered=False)

        self._count('deliveries_failed')
        logger.warning(f"Order {order_id} failed on {drone_id}: {reason}")
        return DeliveryResult(
            order_id=order_id,
            drone_id=drone_id,
            status=order.status,
            completed_at=now,
            failure_reason=reason,
        )

    def get_current_order(self, drone_id: str, actor: Optional[Actor] = None) -> Order:
        """The order the drone is carrying"""
        require_drone_or_admin(actor, drone_id)
        drone = self.store.require(DRONES, drone_id)
        if not drone.current_order_id:
            raise NotFoundError(ErrorCodes.ORDER_001, "No current order assigned to drone")
        return self.store.require(ORDERS, drone.current_order_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_carrier(self, drone_id: str, order_id: str) -> Drone:
        drone = self.store.require(DRONES, drone_id)
        if drone.current_order_id != order_id:
            raise ConflictError(
                ErrorCodes.DRONE_002,
                f"Order {order_id} is not assigned to drone {drone_id}"
            )
        return drone

    def _check_geofence(self, drone_id: str, reported: Location, expected: Location, action: str):
        if within_radius(reported, expected, self.config.location_tolerance_meters):
            return
        offset = distance_between(reported, expected) * 1000
        logger.warning(f"Rejected {action} by {drone_id}: {offset:.0f} m from expected location")
        self._count('geofence_rejections')
        raise ValidationFailure(
            f"Drone is not at {action} location",
            details={'distance_meters': round(offset, 1),
                     'tolerance_meters': self.config.location_tolerance_meters},
        )

    def _complete_job(self, order_id: str):
        job = self.ledger.open_job_for_order(order_id)
        if job is not None:
            self.ledger.complete_job(job.id)

    def _eta(self, origin: Location, destination: Location) -> datetime:
        return estimate_eta(distance_between(origin, destination),
                            self.config.default_speed_kmh, self.clock())

    def _count(self, name: str):
        if self.metrics is not None:
            self.metrics.record_counter(name)
