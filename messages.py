# Wire Messages & Topic Addressing
# File: messages.py

"""
Payloads exchanged with drones over the message bus, and the topic hierarchy.

Field names on the wire are camelCase with short coordinate keys
(lat/lon/alt) to keep telemetry small; timestamps are unix milliseconds.
"""

import re
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from models import DroneStatus, Location, Severity

# ============================================================================
# TOPICS
# ============================================================================

class Topics:
    """Topic hierarchy: drones.<id>.<stream>, orders.<id>.location, system.*"""

    DRONES = "drones"
    ORDERS = "orders"
    SERVER_STATUS = "system.server.status"

    _DRONE_ID = re.compile(r"^drones\.([^.]+)\.")
    _ORDER_ID = re.compile(r"^orders\.([^.]+)\.")

    @staticmethod
    def drone_heartbeat(drone_id: str) -> str:
        return f"{Topics.DRONES}.{drone_id}.heartbeat"

    @staticmethod
    def heartbeat_ack(drone_id: str) -> str:
        return f"{Topics.drone_heartbeat(drone_id)}.ack"

    @staticmethod
    def drone_status(drone_id: str) -> str:
        return f"{Topics.DRONES}.{drone_id}.status"

    @staticmethod
    def status_ack(drone_id: str) -> str:
        return f"{Topics.drone_status(drone_id)}.ack"

    @staticmethod
    def drone_commands(drone_id: str) -> str:
        return f"{Topics.DRONES}.{drone_id}.commands"

    @staticmethod
    def order_location(order_id: str) -> str:
        return f"{Topics.ORDERS}.{order_id}.location"

    @staticmethod
    def all_drones_heartbeat() -> str:
        return f"{Topics.DRONES}.+.heartbeat"

    @staticmethod
    def all_drones_status() -> str:
        return f"{Topics.DRONES}.+.status"

    @staticmethod
    def extract_drone_id(topic: str) -> Optional[str]:
        match = Topics._DRONE_ID.match(topic)
        return match.group(1) if match else None

    @staticmethod
    def extract_order_id(topic: str) -> Optional[str]:
        match = Topics._ORDER_ID.match(topic)
        return match.group(1) if match else None

    @staticmethod
    def matches(topic: str, pattern: str) -> bool:
        """
        Match a topic against a pattern

        '+' matches exactly one level, a trailing '#' matches any remainder
        (including nothing).
        """
        topic_parts = topic.split('.')
        pattern_parts = pattern.split('.')

        for i, part in enumerate(pattern_parts):
            if part == '#' and i == len(pattern_parts) - 1:
                return len(topic_parts) >= i
            if i >= len(topic_parts):
                return False
            if part != '+' and part != topic_parts[i]:
                return False

        return len(topic_parts) == len(pattern_parts)

    @staticmethod
    def to_regex(pattern: str) -> str:
        """Translate a handler pattern into a Kafka subscription regex"""
        parts = []
        for part in pattern.split('.'):
            if part == '+':
                parts.append(r'[^.]+')
            elif part == '#':
                parts.append(r'.*')
            else:
                parts.append(re.escape(part))
        regex = r'\.'.join(parts)
        if pattern.endswith('.#'):
            regex = regex[:-len(r'\..*')] + r'(\..*)?'
        return f"^{regex}$"


def epoch_ms(moment: Optional[datetime] = None) -> int:
    if moment is None:
        return int(time.time() * 1000)
    return int(moment.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000)

# ============================================================================
# PAYLOADS
# ============================================================================

class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)


class GeoPoint(WireModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    alt: Optional[float] = None
    address: Optional[str] = None

    def to_location(self, timestamp: Optional[datetime] = None) -> Location:
        return Location(latitude=self.lat, longitude=self.lon, altitude=self.alt,
                        address=self.address, timestamp=timestamp)

    @classmethod
    def from_location(cls, location: Location) -> "GeoPoint":
        return cls(lat=location.latitude, lon=location.longitude,
                   alt=location.altitude, address=location.address)


class HeartbeatMessage(WireModel):
    """Drone -> engine telemetry"""
    drone_id: Optional[str] = Field(default=None, alias="droneId")
    location: GeoPoint
    battery: float = Field(ge=0, le=100)
    speed: float = Field(ge=0)
    ts: Optional[int] = Field(default=None, validation_alias=AliasChoices("ts", "timestamp"))

    def reported_at(self) -> Optional[datetime]:
        return from_epoch_ms(self.ts) if self.ts is not None else None


class StatusMessage(WireModel):
    """Drone -> engine status change"""
    drone_id: Optional[str] = Field(default=None, alias="droneId")
    status: DroneStatus
    reason: Optional[str] = None
    severity: Severity = Severity.MEDIUM
    timestamp: Optional[int] = None
    location: Optional[GeoPoint] = None


class CurrentJobInfo(WireModel):
    order_id: str = Field(alias="orderId")
    dest_lat: float = Field(alias="destLat")
    dest_lon: float = Field(alias="destLon")
    eta: int


class HeartbeatAck(WireModel):
    status: Literal["ok", "warning", "error"]
    current_job: Optional[CurrentJobInfo] = Field(default=None, alias="currentJob")
    instructions: Optional[str] = None
    server_time: int = Field(alias="serverTime")


class StatusAck(WireModel):
    received: bool
    message: Optional[str] = None
    timestamp: int = Field(default_factory=epoch_ms)


class LocationBroadcast(WireModel):
    """Engine -> observers live tracking update"""
    order_id: str = Field(alias="orderId")
    drone_id: str = Field(alias="droneId")
    location: GeoPoint
    speed: float
    eta: int
    timestamp: int = Field(default_factory=epoch_ms)


class ServerStatus(WireModel):
    status: Literal["online", "offline"]
    timestamp: int = Field(default_factory=epoch_ms)

# ============================================================================
# COMMANDS
# ============================================================================

class CommandType(str, Enum):
    ROUTE_CHANGE = "route_change"
    RETURN_TO_BASE = "return_to_base"
    EMERGENCY_LAND = "emergency_land"
    SPEED_LIMIT = "speed_limit"
    STATUS_REQUEST = "status_request"


class RouteChangePayload(WireModel):
    order_id: str = Field(alias="orderId")
    new_destination: GeoPoint = Field(alias="newDestination")
    reason: str


class ReturnToBasePayload(WireModel):
    base_location: GeoPoint = Field(alias="baseLocation")
    urgent: bool = False


class EmergencyLandPayload(WireModel):
    reason: str


class SpeedLimitPayload(WireModel):
    max_speed: float = Field(alias="maxSpeed", gt=0)
    reason: str


class Command(WireModel):
    """Engine -> drone out-of-band instruction"""
    command_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="commandId")
    type: CommandType
    timestamp: int = Field(default_factory=epoch_ms)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def build(cls, command_type: CommandType, payload: Optional[WireModel] = None) -> "Command":
        return cls(type=command_type, payload=payload.to_wire() if payload else {})
