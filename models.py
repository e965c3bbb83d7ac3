# Dispatch Data Models
# File: models.py

"""
Core records of the dispatch engine: drones, orders, jobs and breakage events.
Cross references (Drone.current_order_id, Order.assigned_drone_id) are plain ids.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from errors import PermissionDenied, ValidationFailure

# ============================================================================
# ENUMS
# ============================================================================

class DroneStatus(str, Enum):
    OPERATIONAL = "operational"
    BROKEN = "broken"
    IN_TRANSIT = "in_transit"
    IDLE = "idle"
    OFFLINE = "offline"

class OrderStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    AWAITING_RESCUE = "awaiting_rescue"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES

class JobType(str, Enum):
    DELIVERY = "delivery"
    RESCUE = "rescue"

class JobStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {Priority.LOW: 1, Priority.MEDIUM: 2, Priority.HIGH: 3}[self]

class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

class UserRole(str, Enum):
    ADMIN = "admin"
    ENDUSER = "enduser"
    DRONE = "drone"


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.DELIVERED, OrderStatus.FAILED, OrderStatus.CANCELLED,
})
ACTIVE_ORDER_STATUSES = frozenset({
    OrderStatus.ASSIGNED, OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT, OrderStatus.AWAITING_RESCUE,
})
OPEN_JOB_STATUSES = frozenset({JobStatus.PENDING, JobStatus.ASSIGNED})


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"

# ============================================================================
# VALUE TYPES
# ============================================================================

@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    address: Optional[str] = None
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        if not -90 <= self.latitude <= 90:
            raise ValidationFailure(f"latitude out of range: {self.latitude}")
        if not -180 <= self.longitude <= 180:
            raise ValidationFailure(f"longitude out of range: {self.longitude}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Location"]:
        if data is None:
            return None
        return cls(
            latitude=data['latitude'],
            longitude=data['longitude'],
            altitude=data.get('altitude'),
            address=data.get('address'),
            timestamp=_parse_dt(data.get('timestamp')),
        )

@dataclass
class Actor:
    """Authenticated caller identity supplied by the auth layer"""
    id: str
    role: UserRole


def require_role(actor: Optional[Actor], *roles: UserRole):
    """Reject actors outside roles. actor=None is an internal caller and always passes."""
    if actor is not None and actor.role not in roles:
        raise PermissionDenied(f"{actor.role.value} may not perform this operation")


def require_drone_or_admin(actor: Optional[Actor], drone_id: str):
    """Drones may only act as themselves; admins may act for any drone"""
    require_role(actor, UserRole.DRONE, UserRole.ADMIN)
    if actor is not None and actor.role == UserRole.DRONE and actor.id != drone_id:
        raise PermissionDenied(f"drone {actor.id} cannot act for drone {drone_id}")

# ============================================================================
# DRONES
# ============================================================================

@dataclass
class Drone:
    id: str
    model: str
    current_location: Location
    home_base: Location
    max_payload: float
    max_range: float
    status: DroneStatus = DroneStatus.IDLE
    battery_level: float = 100.0
    capabilities: Set[str] = field(default_factory=set)
    speed: float = 0.0
    current_order_id: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    total_deliveries: int = 0
    total_flight_time: float = 0.0  # hours
    created_at: datetime = field(default_factory=datetime.now)
    last_maintenance_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Drone":
        return cls(
            id=data['id'],
            model=data['model'],
            current_location=Location.from_dict(data['current_location']),
            home_base=Location.from_dict(data['home_base']),
            max_payload=data['max_payload'],
            max_range=data['max_range'],
            status=DroneStatus(data['status']),
            battery_level=data['battery_level'],
            capabilities=set(data.get('capabilities') or []),
            speed=data.get('speed', 0.0),
            current_order_id=data.get('current_order_id'),
            last_heartbeat=_parse_dt(data.get('last_heartbeat')),
            total_deliveries=data.get('total_deliveries', 0),
            total_flight_time=data.get('total_flight_time', 0.0),
            created_at=_parse_dt(data.get('created_at')) or datetime.now(),
            last_maintenance_at=_parse_dt(data.get('last_maintenance_at')),
        )

# ============================================================================
# ORDERS
# ============================================================================

@dataclass
class PackageDetails:
    weight: float  # kg
    length: float  # cm
    width: float
    height: float
    fragile: bool = False
    description: Optional[str] = None
    special_handling: List[str] = field(default_factory=list)

    def __post_init__(self):
        for name in ('weight', 'length', 'width', 'height'):
            if getattr(self, name) <= 0:
                raise ValidationFailure(f"package {name} must be positive")

@dataclass
class OrderModification:
    """Audit entry for an administrative route change"""
    modified_by: str
    reason: str
    previous_origin: Location
    previous_destination: Location
    new_origin: Location
    new_destination: Location
    created_at: datetime = field(default_factory=datetime.now)

@dataclass
class Order:
    id: str
    user_id: str
    origin: Location
    destination: Location
    package_details: PackageDetails
    cost: float
    estimated_pickup_time: datetime
    estimated_delivery_time: datetime
    status: OrderStatus = OrderStatus.PENDING
    assigned_drone_id: Optional[str] = None
    actual_pickup_time: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None
    failure_reason: Optional[str] = None
    scheduled_pickup_time: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    modification_history: List[OrderModification] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        package = dict(data['package_details'])
        history = [
            OrderModification(
                modified_by=m['modified_by'],
                reason=m['reason'],
                previous_origin=Location.from_dict(m['previous_origin']),
                previous_destination=Location.from_dict(m['previous_destination']),
                new_origin=Location.from_dict(m['new_origin']),
                new_destination=Location.from_dict(m['new_destination']),
                created_at=_parse_dt(m['created_at']),
            )
            for m in data.get('modification_history') or []
        ]
        return cls(
            id=data['id'],
            user_id=data['user_id'],
            origin=Location.from_dict(data['origin']),
            destination=Location.from_dict(data['destination']),
            package_details=PackageDetails(**package),
            cost=data['cost'],
            estimated_pickup_time=_parse_dt(data['estimated_pickup_time']),
            estimated_delivery_time=_parse_dt(data['estimated_delivery_time']),
            status=OrderStatus(data['status']),
            assigned_drone_id=data.get('assigned_drone_id'),
            actual_pickup_time=_parse_dt(data.get('actual_pickup_time')),
            actual_delivery_time=_parse_dt(data.get('actual_delivery_time')),
            failure_reason=data.get('failure_reason'),
            scheduled_pickup_time=_parse_dt(data.get('scheduled_pickup_time')),
            cancelled_at=_parse_dt(data.get('cancelled_at')),
            modification_history=history,
            created_at=_parse_dt(data.get('created_at')) or datetime.now(),
            updated_at=_parse_dt(data.get('updated_at')) or datetime.now(),
        )

# ============================================================================
# JOBS & BREAKAGE EVENTS
# ============================================================================

@dataclass
class Job:
    id: str
    type: JobType
    order_id: str
    pickup_location: Location
    priority: Priority
    status: JobStatus = JobStatus.PENDING
    broken_drone_id: Optional[str] = None
    assigned_drone_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=data['id'],
            type=JobType(data['type']),
            order_id=data['order_id'],
            pickup_location=Location.from_dict(data['pickup_location']),
            priority=Priority(data['priority']),
            status=JobStatus(data['status']),
            broken_drone_id=data.get('broken_drone_id'),
            assigned_drone_id=data.get('assigned_drone_id'),
            created_at=_parse_dt(data['created_at']),
            assigned_at=_parse_dt(data.get('assigned_at')),
            completed_at=_parse_dt(data.get('completed_at')),
        )

@dataclass
class BreakageEvent:
    id: str
    drone_id: str
    location: Location
    issue: str
    severity: Severity
    was_carrying_order: bool
    order_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BreakageEvent":
        return cls(
            id=data['id'],
            drone_id=data['drone_id'],
            location=Location.from_dict(data['location']),
            issue=data['issue'],
            severity=Severity(data['severity']),
            was_carrying_order=data['was_carrying_order'],
            order_id=data.get('order_id'),
            created_at=_parse_dt(data['created_at']),
            resolved_at=_parse_dt(data.get('resolved_at')),
            resolution_notes=data.get('resolution_notes'),
        )

# ============================================================================
# SERIALIZATION HELPERS
# ============================================================================

def to_dict(record) -> Dict[str, Any]:
    """Convert a record into JSON-compatible primitives"""
    return _encode(asdict(record))


def _encode(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted(_encode(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _parse_dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
