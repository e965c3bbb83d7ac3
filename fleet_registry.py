# Fleet Registry
# File: fleet_registry.py

"""
Owns drone records and their lifecycle:

    OPERATIONAL -> IN_TRANSIT (assigned) -> IDLE (delivered / failed)
    any -> BROKEN (fault report), BROKEN -> IDLE (operator repair)

OFFLINE is never stored by normal flow; it is derived from heartbeat age.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from config import DispatchConfig
from errors import ConflictError, ErrorCodes, ValidationFailure
from models import (
    Actor, Drone, DroneStatus, Location, UserRole,
    require_drone_or_admin, require_role,
)
from state_store import BREAKAGE_EVENTS, DRONES, StateStore

logger = logging.getLogger(__name__)


def derive_status(stored: DroneStatus, battery: float, has_order: bool,
                  low_battery_threshold: float) -> DroneStatus:
    """
    Status implied by a telemetry update

    BROKEN is sticky; low battery forces IDLE (return to base) even mid-delivery;
    otherwise carrying an order means IN_TRANSIT.
    """
    if stored == DroneStatus.BROKEN:
        return stored
    if battery < low_battery_threshold:
        return DroneStatus.IDLE
    if has_order:
        return DroneStatus.IN_TRANSIT
    return DroneStatus.OPERATIONAL


def effective_status(drone: Drone, now: datetime, offline_timeout_seconds: float) -> DroneStatus:
    """Stored status, or OFFLINE when the last heartbeat is older than the timeout"""
    if drone.status == DroneStatus.BROKEN:
        return drone.status
    if drone.last_heartbeat is None:
        return drone.status
    if (now - drone.last_heartbeat).total_seconds() > offline_timeout_seconds:
        return DroneStatus.OFFLINE
    return drone.status


class FleetRegistry:
    """Registry of drones backed by the shared state store"""

    def __init__(self, store: StateStore, config: DispatchConfig,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.config = config
        self.clock = clock or datetime.now

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, drone_id: str, actor: Optional[Actor] = None) -> Drone:
        if actor is not None and actor.role == UserRole.DRONE:
            require_drone_or_admin(actor, drone_id)
        return self.store.require(DRONES, drone_id)

    def status_of(self, drone: Drone) -> DroneStatus:
        return effective_status(drone, self.clock(), self.config.drone_offline_timeout_seconds)

    def list_drones(self, status: Optional[DroneStatus] = None,
                    actor: Optional[Actor] = None) -> List[Drone]:
        """All drones, newest heartbeat first, optionally filtered by effective status"""
        require_role(actor, UserRole.ADMIN)
        drones = self.store.find(DRONES)
        if status is not None:
            drones = [d for d in drones if self.status_of(d) == status]
        return sorted(drones, key=lambda d: d.last_heartbeat or datetime.min, reverse=True)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def register(self, drone: Drone, actor: Optional[Actor] = None) -> Drone:
        """Add a drone to the fleet. Conflict if the id is already registered."""
        require_role(actor, UserRole.ADMIN)
        _validate_battery(drone.battery_level)
        if drone.max_payload <= 0 or drone.max_range <= 0:
            raise ValidationFailure("max_payload and max_range must be positive")
        if drone.last_maintenance_at is None:
            drone.last_maintenance_at = self.clock()

        saved = self.store.add(DRONES, drone)
        logger.info(f"Drone registered: {drone.id} ({drone.model})")
        return saved

    def update_specs(self, drone_id: str, actor: Optional[Actor] = None, **changes) -> Drone:
        """Update descriptive fields (model, home base, capabilities, limits)"""
        require_role(actor, UserRole.ADMIN)
        allowed = {'model', 'home_base', 'current_location', 'capabilities',
                   'max_payload', 'max_range', 'battery_level'}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationFailure(f"cannot update fields: {sorted(unknown)}")

        with self.store.lock(DRONES, drone_id):
            drone = self.store.require(DRONES, drone_id)
            if 'battery_level' in changes:
                _validate_battery(changes['battery_level'])
            for name, value in changes.items():
                if name == 'capabilities':
                    value = set(value)
                setattr(drone, name, value)
            self.store.update(DRONES, drone)
        return drone

    def remove(self, drone_id: str, actor: Optional[Actor] = None):
        """Delete a drone that is neither carrying an order nor in flight"""
        require_role(actor, UserRole.ADMIN)
        with self.store.lock(DRONES, drone_id):
            drone = self.store.require(DRONES, drone_id)
            if drone.current_order_id:
                raise ConflictError(
                    ErrorCodes.DRONE_002,
                    "Cannot delete drone that is currently assigned to an order"
                )
            if drone.status == DroneStatus.IN_TRANSIT:
                raise ConflictError(ErrorCodes.DRONE_002, "Cannot delete drone that is in transit")
            self.store.delete(DRONES, drone_id)
        logger.info(f"Drone removed: {drone_id}")

    def repair(self, drone_id: str, notes: Optional[str] = None,
               actor: Optional[Actor] = None) -> Drone:
        """
        Return a drone to service after maintenance

        Sets IDLE, stamps last_maintenance_at and closes every open breakage
        event for the drone.

        Raises:
            ConflictError: drone still carries an order
        """
        require_role(actor, UserRole.ADMIN)
        now = self.clock()
        with self.store.lock(DRONES, drone_id):
            drone = self.store.require(DRONES, drone_id)
            if drone.current_order_id:
                raise ConflictError(
                    ErrorCodes.DRONE_002,
                    "Cannot repair drone that is currently assigned to an order"
                )
            previous = drone.status
            drone.status = DroneStatus.IDLE
            drone.last_maintenance_at = now
            self.store.update(DRONES, drone)

            open_events = self.store.find(
                BREAKAGE_EVENTS,
                lambda e: e.drone_id == drone_id and e.resolved_at is None
            )
            for event in open_events:
                event.resolved_at = now
                event.resolution_notes = notes
                self.store.update(BREAKAGE_EVENTS, event)

        logger.info(
            f"Drone {drone_id} repaired ({previous.value} -> idle), "
            f"closed {len(open_events)} breakage event(s)"
        )
        return drone

    # ------------------------------------------------------------------
    # Telemetry & assignment
    # ------------------------------------------------------------------

    def update_telemetry(self, drone_id: str, location: Location, battery: float,
                         speed: float, reported_at: Optional[datetime] = None) -> Tuple[Drone, bool]:
        """
        Apply a heartbeat to the drone record

        A heartbeat whose timestamp is not newer than the last applied one is a
        duplicate or late delivery and leaves the record untouched.

        Returns:
            (drone, applied)
        """
        _validate_battery(battery)
        if speed < 0:
            raise ValidationFailure(f"speed must be non-negative, got {speed}")

        heartbeat_at = reported_at or self.clock()
        with self.store.lock(DRONES, drone_id):
            drone = self.store.require(DRONES, drone_id)
            if drone.last_heartbeat is not None and heartbeat_at <= drone.last_heartbeat:
                logger.debug(f"Ignoring stale heartbeat for {drone_id} at {heartbeat_at}")
                return drone, False

            if drone.current_order_id and drone.last_heartbeat is not None:
                elapsed = (heartbeat_at - drone.last_heartbeat).total_seconds()
                elapsed = min(elapsed, self.config.drone_offline_timeout_seconds)
                drone.total_flight_time += elapsed / 3600.0

            drone.current_location = location
            drone.battery_level = battery
            drone.speed = speed
            drone.last_heartbeat = heartbeat_at
            drone.status = derive_status(
                drone.status, battery, drone.current_order_id is not None,
                self.config.low_battery_threshold
            )
            self.store.update(DRONES, drone)

        logger.debug(f"Telemetry {drone_id}: battery={battery:.0f}% status={drone.status.value}")
        return drone, True

    def assign_order(self, drone_id: str, order_id: str) -> Drone:
        """Bind an order to the drone and mark it IN_TRANSIT"""
        with self.store.lock(DRONES, drone_id):
            drone = self.store.require(DRONES, drone_id)
            if drone.current_order_id and drone.current_order_id != order_id:
                raise ConflictError(ErrorCodes.DRONE_002)
            if drone.status == DroneStatus.BROKEN:
                raise ConflictError(ErrorCodes.DRONE_002, f"Drone {drone_id} is broken")
            drone.current_order_id = order_id
            drone.status = DroneStatus.IN_TRANSIT
            self.store.update(DRONES, drone)
        return drone

    def mark_broken(self, drone_id: str, location: Location) -> Drone:
        """Set BROKEN and record the fault position. The order reference is kept."""
        with self.store.lock(DRONES, drone_id):
            drone = self.store.require(DRONES, drone_id)
            drone.status = DroneStatus.BROKEN
            drone.current_location = location
            self.store.update(DRONES, drone)
        logger.warning(f"Drone {drone_id} marked broken at ({location.latitude:.5f}, {location.longitude:.5f})")
        return drone

    def release_order(self, drone_id: str, delivered: bool = False) -> Drone:
        """
        Detach the drone from its order

        The drone becomes IDLE unless it is BROKEN; total_deliveries grows only
        after a successful delivery.
        """
        with self.store.lock(DRONES, drone_id):
            drone = self.store.require(DRONES, drone_id)
            drone.current_order_id = None
            if drone.status != DroneStatus.BROKEN:
                drone.status = DroneStatus.IDLE
            if delivered:
                drone.total_deliveries += 1
            self.store.update(DRONES, drone)
        return drone

    # ------------------------------------------------------------------
    # Fleet statistics
    # ------------------------------------------------------------------

    def fleet_summary(self) -> Dict:
        """Aggregate fleet status"""
        drones = self.store.find(DRONES)
        stats = {
            'total': len(drones),
            'by_status': defaultdict(int),
            'average_battery': 0.0,
            'active_deliveries': 0,
        }

        for drone in drones:
            stats['by_status'][self.status_of(drone).value] += 1
            if drone.current_order_id:
                stats['active_deliveries'] += 1

        if drones:
            stats['average_battery'] = sum(d.battery_level for d in drones) / len(drones)

        stats['by_status'] = dict(stats['by_status'])
        return stats

    def stale_drones(self) -> List[Drone]:
        """Drones whose heartbeat has timed out"""
        return [d for d in self.store.find(DRONES) if self.status_of(d) == DroneStatus.OFFLINE]


def _validate_battery(battery: float):
    if not 0 <= battery <= 100:
        raise ValidationFailure(f"battery level must be within 0-100, got {battery}")
