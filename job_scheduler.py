# Job Scheduler & Reconciler
# File: job_scheduler.py

"""
Matches pending jobs to requesting drones.

Pending jobs sit in an in-memory heap ordered by priority (HIGH first) and
creation time (FIFO within a tier). The heap is an index only: the job record's
status in the state store is authoritative, and reservation flips it with a
conditional update, so two drones can never hold the same job. After a restart
the heap is rebuilt from a store scan.
"""

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from config import DispatchConfig
from errors import ConflictError, DispatchError, ErrorCodes, NoJobsAvailable
from fleet_registry import FleetRegistry
from models import (
    Actor, Drone, DroneStatus, Job, JobStatus, JobType, Location, Order,
    OrderStatus, require_drone_or_admin,
)
from order_ledger import OrderLedger
from state_store import BREAKAGE_EVENTS, DRONES, JOBS, ORDERS, StateStore

logger = logging.getLogger(__name__)

RESERVABLE_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.AWAITING_RESCUE)

_SKIP = object()


@dataclass
class Reservation:
    """What a drone receives after reserving a job"""
    job_id: str
    order_id: str
    job_type: JobType
    pickup_location: Location
    destination: Location
    broken_drone_id: Optional[str] = None


def job_fits_drone(drone: Drone, order: Order) -> bool:
    """Payload limit and fragile-handling capability"""
    package = order.package_details
    if package.weight > drone.max_payload:
        return False
    if package.fragile and 'fragile' not in drone.capabilities:
        return False
    return True


class JobScheduler:
    """Priority-then-FIFO job assignment with single-winner reservation"""

    def __init__(self, store: StateStore, fleet: FleetRegistry, ledger: OrderLedger,
                 config: DispatchConfig, metrics=None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.fleet = fleet
        self.ledger = ledger
        self.config = config
        self.metrics = metrics
        self.clock = clock or datetime.now
        self._queue: List[Tuple[int, datetime, int, str]] = []
        self._queue_lock = threading.Lock()
        self._sequence = itertools.count()

    # ------------------------------------------------------------------
    # Queue maintenance
    # ------------------------------------------------------------------

    def enqueue(self, job: Job):
        with self._queue_lock:
            self._push(job)

    def _push(self, job: Job):
        heapq.heappush(
            self._queue,
            (-job.priority.rank, job.created_at, next(self._sequence), job.id)
        )

    def create_job(self, order_id: str, job_type: JobType, pickup_location: Location,
                   broken_drone_id: Optional[str] = None) -> Job:
        """
        Create a job in the ledger and make it visible to reservations

        The queue lock is a leaf lock: it guards heap operations only and
        never wraps a store access.
        """
        job = self.ledger.create_job(order_id, job_type, pickup_location, broken_drone_id)
        self.enqueue(job)
        return job

    def rebuild(self) -> int:
        """Reload the queue from PENDING job records"""
        pending = self.ledger.list_jobs(status=JobStatus.PENDING)
        with self._queue_lock:
            self._queue = []
            for job in pending:
                self._push(job)
        logger.info(f"Job queue rebuilt with {len(pending)} pending job(s)")
        return len(pending)

    def pending_count(self) -> int:
        return len(self.ledger.list_jobs(status=JobStatus.PENDING))

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    def reserve_job(self, drone_id: str, actor: Optional[Actor] = None) -> Reservation:
        """
        Hand the best pending job the drone can carry to that drone

        Args:
            drone_id: Requesting drone
            actor: Authenticated caller (the drone itself or an admin)

        Returns:
            Reservation with the pickup location and destination

        Raises:
            NotFoundError: unknown drone
            ConflictError: drone is broken, offline, low on battery or busy
            NoJobsAvailable: nothing pending that this drone can take
        """
        require_drone_or_admin(actor, drone_id)

        with self.store.lock(DRONES, drone_id):
            drone = self.store.require(DRONES, drone_id)
            self._check_eligible(drone)

            for entry in self._candidates():
                reservation = self._try_reserve(drone, entry[3])
                if reservation is _SKIP:
                    continue
                self._discard(entry)
                if reservation is not None:
                    self._count('reservations')
                    return reservation

        self._count('scheduling_misses')
        logger.debug(f"No jobs available for {drone_id}")
        raise NoJobsAvailable()

    def _candidates(self) -> List[Tuple[int, datetime, int, str]]:
        """Queue entries in selection order; the queue lock is held only for the copy"""
        with self._queue_lock:
            return sorted(self._queue)

    def _discard(self, entry: Tuple[int, datetime, int, str]):
        with self._queue_lock:
            try:
                self._queue.remove(entry)
            except ValueError:
                return
            heapq.heapify(self._queue)

    def _check_eligible(self, drone: Drone):
        if drone.status == DroneStatus.BROKEN:
            raise ConflictError(ErrorCodes.DRONE_002, f"Drone {drone.id} is broken")
        if drone.current_order_id:
            raise ConflictError(
                ErrorCodes.DRONE_002,
                f"Drone {drone.id} already carries order {drone.current_order_id}"
            )
        if self.fleet.status_of(drone) == DroneStatus.OFFLINE:
            raise ConflictError(ErrorCodes.DRONE_002, f"Drone {drone.id} is offline")
        if drone.battery_level < self.config.low_battery_threshold:
            raise ConflictError(
                ErrorCodes.DRONE_002,
                f"Drone {drone.id} battery too low ({drone.battery_level:.0f}%)"
            )

    def _try_reserve(self, drone: Drone, job_id: str):
        """
        Attempt one queue entry

        Returns:
            Reservation on success, _SKIP when the drone cannot carry the job
            (entry goes back on the queue), None for stale entries
        """
        job = self.store.get(JOBS, job_id)
        if job is None or job.status != JobStatus.PENDING:
            return None

        with self.store.lock(ORDERS, job.order_id):
            order = self.store.get(ORDERS, job.order_id)
            if order is None or order.status not in RESERVABLE_ORDER_STATUSES:
                logger.warning(f"Dropping job {job_id}: order {job.order_id} is not reservable")
                return None
            if not job_fits_drone(drone, order):
                return _SKIP

            reserved = self.store.compare_and_set(
                JOBS, job_id, 'status', JobStatus.PENDING,
                {
                    'status': JobStatus.ASSIGNED,
                    'assigned_drone_id': drone.id,
                    'assigned_at': self.clock(),
                }
            )
            if reserved is None:
                return None

            try:
                self.ledger.assign_drone(order.id, drone.id)
                self.fleet.assign_order(drone.id, order.id)
            except DispatchError:
                self.store.compare_and_set(
                    JOBS, job_id, 'status', JobStatus.ASSIGNED,
                    {'status': JobStatus.PENDING, 'assigned_drone_id': None, 'assigned_at': None}
                )
                raise

        logger.info(f"Job {job_id} ({job.type.value}) reserved by {drone.id} for order {order.id}")
        return Reservation(
            job_id=job_id,
            order_id=order.id,
            job_type=job.type,
            pickup_location=job.pickup_location,
            destination=order.destination,
            broken_drone_id=job.broken_drone_id,
        )

    def _count(self, name: str):
        if self.metrics is not None:
            self.metrics.record_counter(name)


# ============================================================================
# RECONCILER
# ============================================================================

class JobReconciler:
    """
    Background pass that creates missing jobs

    PENDING orders without an open job get a DELIVERY job at their origin.
    With reconcile_rescue_jobs enabled, AWAITING_RESCUE orders without an open
    job get a RESCUE job at the location of their latest breakage.
    """

    def __init__(self, scheduler: JobScheduler, config: DispatchConfig):
        self.scheduler = scheduler
        self.ledger = scheduler.ledger
        self.store = scheduler.store
        self.config = config
        self.running = False
        self.worker_thread = None

    def start(self):
        if self.running:
            logger.warning("Job reconciler already running")
            return
        self.running = True
        self.worker_thread = threading.Thread(
            target=self._reconcile_loop,
            daemon=True,
            name="job-reconciler"
        )
        self.worker_thread.start()
        logger.info(f"Job reconciler started (every {self.config.reconcile_interval_seconds}s)")

    def stop(self):
        self.running = False
        if self.worker_thread:
            self.worker_thread.join(timeout=5)
        logger.info("Job reconciler stopped")

    def _reconcile_loop(self):
        while self.running:
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Reconciliation error: {e}")
            self._sleep(self.config.reconcile_interval_seconds)

    def _sleep(self, seconds: float):
        deadline = time.monotonic() + seconds
        while self.running and time.monotonic() < deadline:
            time.sleep(min(0.5, deadline - time.monotonic()))

    def run_once(self) -> List[Job]:
        """
        One reconciliation pass

        Returns:
            Jobs created during this pass
        """
        created = []
        for order in self.ledger.orders_missing_jobs(OrderStatus.PENDING):
            job = self._create(order.id, JobType.DELIVERY, order.origin)
            if job:
                created.append(job)

        if self.config.reconcile_rescue_jobs:
            for order in self.ledger.orders_missing_jobs(OrderStatus.AWAITING_RESCUE):
                event = self._latest_breakage(order.id)
                if event is None:
                    logger.warning(f"Order {order.id} awaits rescue but has no breakage record")
                    continue
                job = self._create(order.id, JobType.RESCUE, event.location, event.drone_id)
                if job:
                    created.append(job)

        if created:
            logger.info(f"Reconciler created {len(created)} job(s)")
        return created

    def _create(self, order_id: str, job_type: JobType, pickup: Location,
                broken_drone_id: Optional[str] = None) -> Optional[Job]:
        try:
            return self.scheduler.create_job(order_id, job_type, pickup, broken_drone_id)
        except ConflictError:
            # raced with another creator
            return None

    def _latest_breakage(self, order_id: str):
        events = self.store.find(BREAKAGE_EVENTS, lambda e: e.order_id == order_id)
        if not events:
            return None
        return max(events, key=lambda e: e.created_at)
