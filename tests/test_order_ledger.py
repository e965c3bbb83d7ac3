"""Order creation, state table, cancellation, modification and jobs."""
import pytest
from datetime import timedelta

from errors import ConflictError, NotFoundError, PermissionDenied, ValidationFailure
from geo_utils import distance_between, estimate_eta
from models import (
    Actor, JobStatus, JobType, Location, OrderStatus, Priority, UserRole,
)
from order_ledger import calculate_cost, refund_for
from tests.helpers import FAR_AWAY, NEARBY, SF, Core, make_package

ADMIN = Actor(id="admin-1", role=UserRole.ADMIN)
ALICE = Actor(id="alice", role=UserRole.ENDUSER)
BOB = Actor(id="bob", role=UserRole.ENDUSER)


class TestCreateOrder:
    def setup_method(self):
        self.core = Core()
        self.ledger = self.core.ledger

    def test_cost_and_estimates(self):
        order = self.ledger.create("alice", SF, NEARBY, make_package(weight=3))
        now = self.core.clock()

        assert order.status == OrderStatus.PENDING
        assert order.cost == calculate_cost(distance_between(SF, NEARBY), 3)
        assert order.estimated_pickup_time == now + timedelta(minutes=30)
        # ~1.4 km at 50 km/h with a 15% buffer rounds up to 2 minutes
        assert order.estimated_delivery_time == now + timedelta(minutes=2)

    def test_cost_formula(self):
        assert calculate_cost(10, 2) == 35.0

    def test_outside_service_area_rejected(self):
        with pytest.raises(ValidationFailure) as exc:
            self.ledger.create("alice", SF, FAR_AWAY, make_package())
        assert exc.value.code == "ORDER_003"

    def test_end_user_always_owns_their_order(self):
        order = self.ledger.create("someone-else", SF, NEARBY, make_package(), actor=ALICE)
        assert order.user_id == "alice"

    def test_drones_cannot_create_orders(self):
        with pytest.raises(PermissionDenied):
            self.ledger.create("alice", SF, NEARBY, make_package(),
                               actor=Actor(id="DRN-1", role=UserRole.DRONE))

    def test_invalid_package_rejected(self):
        with pytest.raises(ValidationFailure):
            make_package(weight=0)

    def test_invalid_coordinates_rejected(self):
        with pytest.raises(ValidationFailure):
            Location(latitude=91, longitude=0)


class TestOrderVisibility:
    def setup_method(self):
        self.core = Core()
        self.order = self.core.ledger.create("alice", SF, NEARBY, make_package(), actor=ALICE)

    def test_owner_sees_order(self):
        assert self.core.ledger.get(self.order.id, ALICE).id == self.order.id

    def test_other_user_gets_not_found(self):
        with pytest.raises(NotFoundError):
            self.core.ledger.get(self.order.id, BOB)

    def test_list_by_user(self):
        self.core.ledger.create("bob", SF, NEARBY, make_package(), actor=BOB)
        assert [o.id for o in self.core.ledger.list_orders(user_id="alice")] == [self.order.id]

    def test_view_timeline(self):
        ledger = self.core.ledger
        ledger.assign_drone(self.order.id, "DRN-1")
        self.core.clock.advance(60)
        ledger.transition(self.order.id, OrderStatus.PICKED_UP)
        ledger.transition(self.order.id, OrderStatus.IN_TRANSIT)
        self.core.clock.advance(60)
        ledger.transition(self.order.id, OrderStatus.DELIVERED)

        view = ledger.get_order_view(self.order.id, ALICE)
        assert view['status'] == 'delivered'
        assert [t['status'] for t in view['timeline']] == ['pending', 'picked_up', 'delivered']
        assert 'current_location' not in view


class TestTransitions:
    def setup_method(self):
        self.core = Core()
        self.ledger = self.core.ledger
        self.order = self.core.add_order()

    def test_happy_path_stamps_times(self):
        self.ledger.assign_drone(self.order.id, "DRN-1")
        picked = self.ledger.transition(self.order.id, OrderStatus.PICKED_UP)
        assert picked.actual_pickup_time == self.core.clock()
        assert picked.actual_delivery_time is None

        self.ledger.transition(self.order.id, OrderStatus.IN_TRANSIT)
        self.core.clock.advance(120)
        delivered = self.ledger.transition(self.order.id, OrderStatus.DELIVERED)
        assert delivered.actual_delivery_time == self.core.clock()

    def test_out_of_table_transition_conflicts(self):
        with pytest.raises(ConflictError) as exc:
            self.ledger.transition(self.order.id, OrderStatus.DELIVERED)
        assert exc.value.code == "ORDER_002"
        assert self.ledger.get(self.order.id).status == OrderStatus.PENDING

    def test_terminal_states_are_final(self):
        self.ledger.cancel(self.order.id)
        with pytest.raises(ConflictError):
            self.ledger.transition(self.order.id, OrderStatus.ASSIGNED)

    def test_rescue_keeps_first_pickup_time(self):
        self.ledger.assign_drone(self.order.id, "DRN-1")
        first = self.ledger.transition(self.order.id, OrderStatus.PICKED_UP).actual_pickup_time
        self.ledger.transition(self.order.id, OrderStatus.AWAITING_RESCUE)
        self.ledger.assign_drone(self.order.id, "DRN-2")
        self.core.clock.advance(600)
        again = self.ledger.transition(self.order.id, OrderStatus.PICKED_UP)
        assert again.actual_pickup_time == first

    def test_failure_records_reason(self):
        self.ledger.assign_drone(self.order.id, "DRN-1")
        failed = self.ledger.transition(self.order.id, OrderStatus.FAILED, reason="recipient absent")
        assert failed.failure_reason == "recipient absent"


class TestCancellation:
    def setup_method(self):
        self.core = Core()
        self.ledger = self.core.ledger
        self.order, self.job = self.core.add_order_with_job()

    def test_pending_refunds_everything(self):
        result = self.ledger.cancel(self.order.id)
        assert result.refund_amount == self.order.cost
        assert result.released_drone_id is None
        assert result.cancelled_job_id == self.job.id
        assert self.ledger.get_job(self.job.id).status == JobStatus.CANCELLED
        assert self.ledger.get(self.order.id).cancelled_at == self.core.clock()

    def test_assigned_refunds_half_and_names_drone(self):
        self.core.add_drone()
        self.core.scheduler.reserve_job("DRN-1")
        result = self.ledger.cancel(self.order.id)
        assert result.refund_amount == round(self.order.cost * 0.5, 2)
        assert result.released_drone_id == "DRN-1"

    def test_picked_up_cannot_be_cancelled(self):
        self.ledger.assign_drone(self.order.id, "DRN-1")
        self.ledger.transition(self.order.id, OrderStatus.PICKED_UP)
        with pytest.raises(ConflictError):
            self.ledger.cancel(self.order.id)
        order = self.ledger.get(self.order.id)
        assert order.status == OrderStatus.PICKED_UP
        assert refund_for(order) == 0

    def test_other_users_cannot_cancel(self):
        with pytest.raises(NotFoundError):
            self.ledger.cancel(self.order.id, BOB)


class TestModification:
    def setup_method(self):
        self.core = Core()
        self.ledger = self.core.ledger
        self.order, self.job = self.core.add_order_with_job()
        self.new_origin = Location(latitude=37.7760, longitude=-122.4180)
        self.new_destination = Location(latitude=37.7900, longitude=-122.4000)

    def test_appends_audit_entry(self):
        order = self.ledger.modify(self.order.id, "customer moved", destination=self.new_destination,
                                   actor=ADMIN)
        assert order.destination == self.new_destination
        entry = order.modification_history[-1]
        assert entry.modified_by == "admin-1"
        assert entry.previous_destination == NEARBY
        assert entry.new_origin == SF

    def test_moves_pending_job_pickup(self):
        self.ledger.modify(self.order.id, "wrong warehouse", origin=self.new_origin, actor=ADMIN)
        assert self.ledger.get_job(self.job.id).pickup_location == self.new_origin

    def test_recomputes_eta_while_in_flight(self):
        self.ledger.assign_drone(self.order.id, "DRN-1")
        self.ledger.transition(self.order.id, OrderStatus.PICKED_UP)
        self.ledger.transition(self.order.id, OrderStatus.IN_TRANSIT)
        self.core.clock.advance(60)

        order = self.ledger.modify(self.order.id, "reroute", destination=self.new_destination,
                                   drone_location=NEARBY, actor=ADMIN)
        remaining = distance_between(NEARBY, self.new_destination)
        assert order.estimated_delivery_time == estimate_eta(remaining, 50, self.core.clock())

    def test_terminal_order_cannot_be_modified(self):
        self.ledger.cancel(self.order.id)
        with pytest.raises(ConflictError):
            self.ledger.modify(self.order.id, "too late", destination=self.new_destination, actor=ADMIN)

    def test_reason_required(self):
        with pytest.raises(ValidationFailure):
            self.ledger.modify(self.order.id, "", destination=self.new_destination, actor=ADMIN)

    def test_admin_only(self):
        with pytest.raises(PermissionDenied):
            self.ledger.modify(self.order.id, "please", destination=self.new_destination, actor=ALICE)


class TestJobs:
    def setup_method(self):
        self.core = Core()
        self.ledger = self.core.ledger
        self.order = self.core.add_order()

    def test_priorities_by_type(self):
        delivery = self.ledger.create_job(self.order.id, JobType.DELIVERY, SF)
        assert delivery.priority == Priority.MEDIUM
        self.ledger.cancel_job(delivery.id)
        rescue = self.ledger.create_job(self.order.id, JobType.RESCUE, NEARBY, broken_drone_id="DRN-1")
        assert rescue.priority == Priority.HIGH
        assert rescue.broken_drone_id == "DRN-1"

    def test_one_live_job_per_order(self):
        self.ledger.create_job(self.order.id, JobType.DELIVERY, SF)
        with pytest.raises(ConflictError):
            self.ledger.create_job(self.order.id, JobType.DELIVERY, SF)

    def test_rescue_requires_broken_drone(self):
        with pytest.raises(ValidationFailure):
            self.ledger.create_job(self.order.id, JobType.RESCUE, SF)

    def test_unknown_order(self):
        with pytest.raises(NotFoundError):
            self.ledger.create_job("ORD-missing", JobType.DELIVERY, SF)

    def test_finished_job_cannot_finish_again(self):
        job = self.ledger.create_job(self.order.id, JobType.DELIVERY, SF)
        self.ledger.complete_job(job.id)
        with pytest.raises(ConflictError):
            self.ledger.cancel_job(job.id)

    def test_orders_missing_jobs(self):
        other = self.core.add_order()
        self.ledger.create_job(other.id, JobType.DELIVERY, SF)
        missing = self.ledger.orders_missing_jobs(OrderStatus.PENDING)
        assert [o.id for o in missing] == [self.order.id]
