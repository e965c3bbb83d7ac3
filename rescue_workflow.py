# Breakage & Rescue Workflow
# File: rescue_workflow.py

"""
Handles drone fault reports.

A broken drone is marked BROKEN and a breakage event is logged. If it was
carrying an order, the order waits for rescue: the carrier's job is cancelled
and a HIGH priority RESCUE job is created at the breakage location, so the
next capable drone picks the package up there and finishes the delivery.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from errors import DispatchError
from fleet_registry import FleetRegistry
from job_scheduler import JobScheduler
from models import (
    Actor, BreakageEvent, DroneStatus, Job, JobType, Location, OrderStatus,
    Severity, UserRole, new_id, require_drone_or_admin, require_role,
)
from order_ledger import OrderLedger
from state_store import BREAKAGE_EVENTS, DRONES, ORDERS, StateStore

logger = logging.getLogger(__name__)


@dataclass
class BreakageReport:
    drone_id: str
    status: DroneStatus
    event_id: str
    message: str
    order_id: Optional[str] = None
    rescue_job_id: Optional[str] = None


class BreakageWorkflow:
    """Fault reporting and rescue job creation"""

    def __init__(self, store: StateStore, fleet: FleetRegistry, ledger: OrderLedger,
                 scheduler: JobScheduler, metrics=None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.fleet = fleet
        self.ledger = ledger
        self.scheduler = scheduler
        self.metrics = metrics
        self.clock = clock or datetime.now

    def report_broken(self, drone_id: str, location: Location, issue: str,
                      severity: Severity = Severity.MEDIUM,
                      actor: Optional[Actor] = None) -> BreakageReport:
        """
        Record a breakdown and start a rescue if a package is on board

        A repeated report for a drone that is already BROKEN and carries
        nothing returns the open breakage event without creating another.
        Failure to create the rescue job is logged; the breakage itself is
        always recorded.

        Args:
            drone_id: Broken drone
            location: Where the drone went down
            issue: Fault description
            severity: Fault severity

        Returns:
            BreakageReport with the rescue job id when one was created
        """
        require_drone_or_admin(actor, drone_id)
        rescue_job = None

        with self.store.lock(DRONES, drone_id):
            drone = self.store.require(DRONES, drone_id)
            if drone.status == DroneStatus.BROKEN and not drone.current_order_id:
                existing = self._open_event(drone_id)
                if existing is not None:
                    logger.info(f"Drone {drone_id} already reported broken ({existing.id})")
                    return BreakageReport(
                        drone_id=drone_id,
                        status=DroneStatus.BROKEN,
                        event_id=existing.id,
                        message="Drone already marked as broken.",
                        order_id=existing.order_id,
                    )

            order_id = drone.current_order_id
            self.fleet.mark_broken(drone_id, location)
            event = BreakageEvent(
                id=new_id("BRK"),
                drone_id=drone_id,
                location=location,
                issue=issue,
                severity=severity,
                was_carrying_order=order_id is not None,
                order_id=order_id,
                created_at=self.clock(),
            )
            self.store.add(BREAKAGE_EVENTS, event)
            self._count('breakages')
            self._log_breakage(drone_id, issue, severity)

            if order_id:
                try:
                    rescue_job = self._start_rescue(drone_id, order_id, location)
                except DispatchError as e:
                    logger.error(f"Rescue job creation failed for order {order_id}: {e.message}")
                    self._count('rescue_failures')
                self.fleet.release_order(drone_id)

        # queue insert happens outside entity locks
        if rescue_job is not None:
            self.scheduler.enqueue(rescue_job)
            message = "Drone marked as broken. Rescue job created."
        else:
            message = "Drone marked as broken."

        return BreakageReport(
            drone_id=drone_id,
            status=DroneStatus.BROKEN,
            event_id=event.id,
            message=message,
            order_id=order_id,
            rescue_job_id=rescue_job.id if rescue_job else None,
        )

    def mark_broken_by_operator(self, drone_id: str, reason: str,
                                actor: Optional[Actor] = None) -> BreakageReport:
        """Operator-initiated breakage at the drone's last known position"""
        require_role(actor, UserRole.ADMIN)
        drone = self.store.require(DRONES, drone_id)
        return self.report_broken(drone_id, drone.current_location, reason, Severity.MEDIUM)

    def _start_rescue(self, drone_id: str, order_id: str, location: Location) -> Job:
        with self.store.lock(ORDERS, order_id):
            order = self.store.require(ORDERS, order_id)
            if order.status != OrderStatus.AWAITING_RESCUE:
                self.ledger.transition(order_id, OrderStatus.AWAITING_RESCUE)

            carrier_job = self.ledger.open_job_for_order(order_id)
            if carrier_job is not None:
                self.ledger.cancel_job(carrier_job.id)

            job = self.ledger.create_job(order_id, JobType.RESCUE, location, broken_drone_id=drone_id)

        logger.info(f"Order {order_id} awaiting rescue, job {job.id}")
        return job

    def _open_event(self, drone_id: str) -> Optional[BreakageEvent]:
        events = self.store.find(
            BREAKAGE_EVENTS,
            lambda e: e.drone_id == drone_id and e.resolved_at is None
        )
        if not events:
            return None
        return max(events, key=lambda e: e.created_at)

    def _log_breakage(self, drone_id: str, issue: str, severity: Severity):
        text = f"Drone {drone_id} broken ({severity.value}): {issue}"
        if severity == Severity.HIGH:
            logger.critical(text)
        else:
            logger.warning(text)

    def _count(self, name: str):
        if self.metrics is not None:
            self.metrics.record_counter(name)
