"""Priority-then-FIFO reservation, eligibility and reconciliation."""
import threading
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from errors import ConflictError, NoJobsAvailable, PermissionDenied
from job_scheduler import JobReconciler, job_fits_drone
from models import (
    Actor, BreakageEvent, DroneStatus, Job, JobStatus, JobType, OrderStatus,
    Priority, Severity, UserRole,
)
from state_store import BREAKAGE_EVENTS, DRONES, JOBS, ORDERS
from tests.helpers import (
    NEARBY, SF, Core, assert_referentially_consistent, make_config, make_drone,
    make_package,
)


class TestReservation:
    def setup_method(self):
        self.core = Core()
        self.core.add_drone("DRN-1")

    def test_reservation_binds_job_order_and_drone(self):
        order, job = self.core.add_order_with_job()
        reservation = self.core.scheduler.reserve_job("DRN-1")

        assert reservation.job_id == job.id
        assert reservation.order_id == order.id
        assert reservation.pickup_location == SF
        assert reservation.destination == NEARBY

        stored_job = self.core.ledger.get_job(job.id)
        assert stored_job.status == JobStatus.ASSIGNED
        assert stored_job.assigned_drone_id == "DRN-1"
        assert stored_job.assigned_at == self.core.clock()
        stored_order = self.core.ledger.get(order.id)
        assert stored_order.status == OrderStatus.ASSIGNED
        assert stored_order.assigned_drone_id == "DRN-1"
        drone = self.core.fleet.get("DRN-1")
        assert drone.current_order_id == order.id
        assert drone.status == DroneStatus.IN_TRANSIT
        assert_referentially_consistent(self.core.store)

    def test_empty_queue_is_a_retryable_miss(self):
        with pytest.raises(NoJobsAvailable) as exc:
            self.core.scheduler.reserve_job("DRN-1")
        assert exc.value.code == "JOB_001"
        assert self.core.metrics.get_counter('scheduling_misses') == 1

    def test_busy_drone_cannot_reserve(self):
        self.core.add_order_with_job()
        self.core.add_order_with_job()
        self.core.scheduler.reserve_job("DRN-1")
        with pytest.raises(ConflictError):
            self.core.scheduler.reserve_job("DRN-1")
        assert self.core.scheduler.pending_count() == 1

    def test_broken_drone_cannot_reserve(self):
        self.core.add_order_with_job()
        self.core.fleet.mark_broken("DRN-1", SF)
        with pytest.raises(ConflictError):
            self.core.scheduler.reserve_job("DRN-1")

    def test_low_battery_drone_cannot_reserve(self):
        self.core.add_order_with_job()
        self.core.fleet.update_telemetry("DRN-1", SF, 10, 0)
        with pytest.raises(ConflictError):
            self.core.scheduler.reserve_job("DRN-1")

    def test_offline_drone_cannot_reserve(self):
        self.core.add_order_with_job()
        self.core.fleet.update_telemetry("DRN-1", SF, 90, 0)
        self.core.clock.advance(600)
        with pytest.raises(ConflictError):
            self.core.scheduler.reserve_job("DRN-1")

    def test_drone_may_only_reserve_for_itself(self):
        self.core.add_order_with_job()
        with pytest.raises(PermissionDenied):
            self.core.scheduler.reserve_job("DRN-1", Actor(id="DRN-2", role=UserRole.DRONE))

    def test_queue_stays_open_while_reserving(self, monkeypatch):
        order, _ = self.core.add_order_with_job()
        queue_free = []
        assign_order = self.core.fleet.assign_order

        def observing_assign(drone_id, order_id):
            acquired = self.core.scheduler._queue_lock.acquire(blocking=False)
            if acquired:
                self.core.scheduler._queue_lock.release()
            queue_free.append(acquired)
            return assign_order(drone_id, order_id)

        monkeypatch.setattr(self.core.fleet, 'assign_order', observing_assign)
        reservation = self.core.scheduler.reserve_job("DRN-1")

        assert reservation.order_id == order.id
        assert queue_free == [True]

    def test_cancelled_order_job_is_skipped(self):
        order, _ = self.core.add_order_with_job()
        self.core.ledger.cancel(order.id)
        with pytest.raises(NoJobsAvailable):
            self.core.scheduler.reserve_job("DRN-1")


class TestSelectionOrder:
    def setup_method(self):
        self.core = Core()
        base = self.core.clock()
        self.expected = {}

        # A: MEDIUM at t=1, B: HIGH at t=2, C: MEDIUM at t=0
        for name, priority, offset, job_type in (
            ('A', Priority.MEDIUM, 1, JobType.DELIVERY),
            ('B', Priority.HIGH, 2, JobType.RESCUE),
            ('C', Priority.MEDIUM, 0, JobType.DELIVERY),
        ):
            order = self.core.add_order()
            if job_type == JobType.RESCUE:
                self.core.store.compare_and_set(
                    ORDERS, order.id, 'status', OrderStatus.PENDING,
                    {'status': OrderStatus.AWAITING_RESCUE}
                )
            self.core.store.add(JOBS, Job(
                id=f"JOB-{name}",
                type=job_type,
                order_id=order.id,
                pickup_location=SF,
                priority=priority,
                broken_drone_id="DRN-X" if job_type == JobType.RESCUE else None,
                created_at=base + timedelta(seconds=offset),
            ))
        self.core.scheduler.rebuild()

    def test_priority_then_fifo(self):
        reserved = []
        for index in range(3):
            drone_id = f"DRN-{index}"
            self.core.add_drone(drone_id)
            reserved.append(self.core.scheduler.reserve_job(drone_id).job_id)
        assert reserved == ["JOB-B", "JOB-C", "JOB-A"]

    def test_rescue_reservation_reports_broken_drone(self):
        self.core.add_drone("DRN-0")
        reservation = self.core.scheduler.reserve_job("DRN-0")
        assert reservation.job_type == JobType.RESCUE
        assert reservation.broken_drone_id == "DRN-X"


class TestConcurrentReservation:
    def test_exactly_one_winner(self):
        core = Core()
        drone_ids = [f"DRN-{i}" for i in range(8)]
        for drone_id in drone_ids:
            core.add_drone(drone_id)
        order, job = core.add_order_with_job()

        barrier = threading.Barrier(len(drone_ids))

        def attempt(drone_id):
            barrier.wait()
            try:
                return core.scheduler.reserve_job(drone_id)
            except NoJobsAvailable:
                return None

        with ThreadPoolExecutor(max_workers=len(drone_ids)) as pool:
            results = list(pool.map(attempt, drone_ids))

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert results.count(None) == len(drone_ids) - 1

        winner = winners[0]
        assert core.ledger.get_job(job.id).assigned_drone_id == core.ledger.get(order.id).assigned_drone_id
        carriers = [d for d in core.store.find(DRONES) if d.current_order_id == order.id]
        assert len(carriers) == 1
        assert winner.order_id == order.id
        assert_referentially_consistent(core.store)


class TestCapabilityMatching:
    def setup_method(self):
        self.core = Core()

    def test_job_fits_drone(self):
        drone = make_drone(max_payload=5, capabilities={'standard'})
        light = self.core.add_order(package=make_package(weight=2))
        heavy = self.core.add_order(package=make_package(weight=8))
        fragile = self.core.add_order(package=make_package(weight=1, fragile=True))
        assert job_fits_drone(drone, light)
        assert not job_fits_drone(drone, heavy)
        assert not job_fits_drone(drone, fragile)

    def test_unsuitable_job_stays_queued_for_capable_drone(self):
        self.core.add_drone("SMALL", max_payload=5)
        self.core.add_drone("BIG", max_payload=25)
        order, _ = self.core.add_order_with_job(package=make_package(weight=12))

        with pytest.raises(NoJobsAvailable):
            self.core.scheduler.reserve_job("SMALL")
        assert self.core.scheduler.reserve_job("BIG").order_id == order.id

    def test_small_drone_takes_next_suitable_job(self):
        self.core.add_drone("SMALL", max_payload=5, capabilities={'standard'})
        self.core.add_order_with_job(package=make_package(weight=1, fragile=True))
        light, _ = self.core.add_order_with_job(package=make_package(weight=1))

        assert self.core.scheduler.reserve_job("SMALL").order_id == light.id
        assert self.core.scheduler.pending_count() == 1


class TestRebuild:
    def test_rebuild_restores_pending_jobs(self):
        core = Core()
        core.add_order_with_job()
        core.add_order_with_job()
        core.scheduler._queue = []

        assert core.scheduler.rebuild() == 2
        core.add_drone()
        core.scheduler.reserve_job("DRN-1")
        assert core.scheduler.pending_count() == 1


class TestReconciler:
    def test_creates_missing_delivery_jobs_once(self):
        core = Core()
        order = core.add_order()
        reconciler = JobReconciler(core.scheduler, core.config)

        created = reconciler.run_once()
        assert [j.order_id for j in created] == [order.id]
        assert created[0].type == JobType.DELIVERY
        assert created[0].pickup_location == order.origin
        assert reconciler.run_once() == []

        core.add_drone()
        assert core.scheduler.reserve_job("DRN-1").order_id == order.id

    def test_rescue_reconciliation_disabled_by_default(self):
        core = Core()
        order = self._stranded_order(core)
        assert JobReconciler(core.scheduler, core.config).run_once() == []
        assert core.ledger.open_job_for_order(order.id) is None

    def test_rescue_reconciliation_when_enabled(self):
        core = Core(config=make_config(reconcile_rescue_jobs=True))
        order = self._stranded_order(core)

        created = JobReconciler(core.scheduler, core.config).run_once()
        assert len(created) == 1
        assert created[0].type == JobType.RESCUE
        assert created[0].priority == Priority.HIGH
        assert created[0].pickup_location == NEARBY
        assert created[0].broken_drone_id == "DRN-1"
        assert created[0].order_id == order.id

    def test_start_and_stop(self):
        core = Core(config=make_config(reconcile_interval_seconds=0.05))
        reconciler = JobReconciler(core.scheduler, core.config)
        reconciler.start()
        assert reconciler.running
        reconciler.stop()
        assert not reconciler.running
        assert not reconciler.worker_thread.is_alive()

    @staticmethod
    def _stranded_order(core):
        order = core.add_order()
        core.ledger.assign_drone(order.id, "DRN-1")
        core.ledger.transition(order.id, OrderStatus.AWAITING_RESCUE)
        core.store.add(BREAKAGE_EVENTS, BreakageEvent(
            id="BRK-1", drone_id="DRN-1", location=NEARBY, issue="rotor",
            severity=Severity.HIGH, was_carrying_order=True, order_id=order.id,
            created_at=core.clock(),
        ))
        return order
