# Order Ledger
# File: order_ledger.py

"""
Order and job records.

Order lifecycle:
    PENDING -> ASSIGNED -> PICKED_UP -> IN_TRANSIT -> DELIVERED | FAILED
    ASSIGNED / PICKED_UP / IN_TRANSIT -> AWAITING_RESCUE -> ASSIGNED (rescuer)
    PENDING | ASSIGNED -> CANCELLED

Each order has at most one non-cancelled job at any time.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from config import DispatchConfig
from errors import ConflictError, ErrorCodes, NotFoundError, ValidationFailure
from geo_utils import distance_between, estimate_eta
from models import (
    Actor, Job, JobStatus, JobType, Location, OPEN_JOB_STATUSES, Order,
    OrderModification, OrderStatus, PackageDetails, Priority, UserRole,
    new_id, require_role, to_dict,
)
from state_store import JOBS, ORDERS, StateStore

logger = logging.getLogger(__name__)

COST_PER_KM = 2.5
COST_PER_KG = 5.0
PICKUP_LEAD_TIME = timedelta(minutes=30)

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.ASSIGNED, OrderStatus.CANCELLED},
    OrderStatus.ASSIGNED: {
        OrderStatus.PICKED_UP, OrderStatus.AWAITING_RESCUE,
        OrderStatus.CANCELLED, OrderStatus.FAILED,
    },
    OrderStatus.PICKED_UP: {
        OrderStatus.IN_TRANSIT, OrderStatus.AWAITING_RESCUE, OrderStatus.FAILED,
    },
    OrderStatus.IN_TRANSIT: {
        OrderStatus.DELIVERED, OrderStatus.AWAITING_RESCUE, OrderStatus.FAILED,
    },
    OrderStatus.AWAITING_RESCUE: {OrderStatus.ASSIGNED, OrderStatus.FAILED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.FAILED: set(),
    OrderStatus.CANCELLED: set(),
}

REFUND_RATES = {
    OrderStatus.PENDING: 1.0,
    OrderStatus.ASSIGNED: 0.5,
}

JOB_PRIORITIES = {
    JobType.DELIVERY: Priority.MEDIUM,
    JobType.RESCUE: Priority.HIGH,
}


@dataclass
class CancelResult:
    order_id: str
    status: OrderStatus
    refund_amount: float
    cancelled_at: datetime
    released_drone_id: Optional[str] = None
    cancelled_job_id: Optional[str] = None


def refund_for(order: Order) -> float:
    """100% of cost while PENDING, 50% once ASSIGNED, nothing afterwards"""
    return round(order.cost * REFUND_RATES.get(order.status, 0.0), 2)


def calculate_cost(distance_km: float, weight_kg: float) -> float:
    return round(distance_km * COST_PER_KM + weight_kg * COST_PER_KG, 2)


class OrderLedger:
    """Durable order and job records with an enforced state table"""

    def __init__(self, store: StateStore, config: DispatchConfig,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.config = config
        self.clock = clock or datetime.now

    # ========================================================================
    # ORDERS
    # ========================================================================

    def create(self, user_id: str, origin: Location, destination: Location,
               package_details: PackageDetails,
               scheduled_pickup_time: Optional[datetime] = None,
               actor: Optional[Actor] = None) -> Order:
        """
        Create a PENDING order

        Args:
            user_id: Owning end user
            origin: Pickup location
            destination: Drop-off location
            package_details: Weight and dimensions, validated on construction
            scheduled_pickup_time: Optional requested pickup time

        Returns:
            The stored order with cost and ETAs filled in
        """
        require_role(actor, UserRole.ENDUSER, UserRole.ADMIN)
        if actor is not None and actor.role == UserRole.ENDUSER:
            user_id = actor.id

        distance = distance_between(origin, destination)
        if distance > self.config.service_area_radius_km:
            raise ValidationFailure(
                f"Delivery distance {distance:.2f} km exceeds service area of "
                f"{self.config.service_area_radius_km} km",
                code=ErrorCodes.ORDER_003,
            )

        now = self.clock()
        order = Order(
            id=new_id("ORD"),
            user_id=user_id,
            origin=origin,
            destination=destination,
            package_details=package_details,
            cost=calculate_cost(distance, package_details.weight),
            estimated_pickup_time=now + PICKUP_LEAD_TIME,
            estimated_delivery_time=estimate_eta(distance, self.config.default_speed_kmh, now),
            scheduled_pickup_time=scheduled_pickup_time,
            created_at=now,
            updated_at=now,
        )
        self.store.add(ORDERS, order)
        logger.info(f"Order created: {order.id} for {user_id} ({distance:.2f} km, ${order.cost})")
        return order

    def get(self, order_id: str, actor: Optional[Actor] = None) -> Order:
        """Fetch an order. End users only see their own orders."""
        order = self.store.require(ORDERS, order_id)
        if actor is not None and actor.role == UserRole.ENDUSER and order.user_id != actor.id:
            raise NotFoundError(ErrorCodes.ORDER_001)
        return order

    def get_order_view(self, order_id: str, actor: Optional[Actor] = None,
                       drone=None) -> Dict[str, Any]:
        """
        Order summary with its status timeline

        The assigned drone (if passed) contributes its model and, while the
        package is on board, its live location.
        """
        order = self.get(order_id, actor)
        view = {
            'order_id': order.id,
            'status': order.status.value,
            'origin': to_dict(order.origin),
            'destination': to_dict(order.destination),
            'package_details': to_dict(order.package_details),
            'estimated_pickup_time': order.estimated_pickup_time.isoformat(),
            'estimated_delivery_time': order.estimated_delivery_time.isoformat(),
            'cost': order.cost,
        }

        if drone is not None and order.assigned_drone_id == drone.id:
            view['assigned_drone'] = {'drone_id': drone.id, 'model': drone.model}
            if order.status in (OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT):
                view['current_location'] = to_dict(drone.current_location)

        if order.failure_reason:
            view['failure_reason'] = order.failure_reason

        timeline = [{'status': OrderStatus.PENDING.value, 'timestamp': order.created_at.isoformat()}]
        if order.actual_pickup_time:
            timeline.append({
                'status': OrderStatus.PICKED_UP.value,
                'timestamp': order.actual_pickup_time.isoformat(),
            })
        if order.actual_delivery_time:
            timeline.append({
                'status': OrderStatus.DELIVERED.value,
                'timestamp': order.actual_delivery_time.isoformat(),
            })
        if order.cancelled_at:
            timeline.append({
                'status': OrderStatus.CANCELLED.value,
                'timestamp': order.cancelled_at.isoformat(),
            })
        view['timeline'] = timeline
        return view

    def list_orders(self, user_id: Optional[str] = None,
                    status: Optional[OrderStatus] = None) -> List[Order]:
        orders = self.store.find(
            ORDERS,
            lambda o: (user_id is None or o.user_id == user_id)
            and (status is None or o.status == status)
        )
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def transition(self, order_id: str, new_status: OrderStatus,
                   at: Optional[datetime] = None, reason: Optional[str] = None,
                   **changes) -> Order:
        """
        Move an order along the state table

        PICKED_UP stamps actual_pickup_time, DELIVERED stamps
        actual_delivery_time, FAILED records the reason.

        Raises:
            ConflictError: transition not in ORDER_TRANSITIONS
        """
        at = at or self.clock()
        with self.store.lock(ORDERS, order_id):
            order = self.store.require(ORDERS, order_id)
            if new_status not in ORDER_TRANSITIONS[order.status]:
                raise ConflictError(
                    ErrorCodes.ORDER_002,
                    f"Order {order_id} cannot move from {order.status.value} to {new_status.value}"
                )

            previous = order.status
            order.status = new_status
            if new_status == OrderStatus.PICKED_UP and order.actual_pickup_time is None:
                order.actual_pickup_time = at
            elif new_status == OrderStatus.DELIVERED:
                order.actual_delivery_time = at
            elif new_status == OrderStatus.FAILED:
                order.failure_reason = reason
            elif new_status == OrderStatus.CANCELLED:
                order.cancelled_at = at
            for name, value in changes.items():
                setattr(order, name, value)
            order.updated_at = at
            self.store.update(ORDERS, order)

        logger.info(f"Order {order_id}: {previous.value} -> {new_status.value}")
        return order

    def assign_drone(self, order_id: str, drone_id: str) -> Order:
        """Bind a drone to the order and move it to ASSIGNED"""
        return self.transition(order_id, OrderStatus.ASSIGNED, assigned_drone_id=drone_id)

    def check_cancellable(self, order_id: str, actor: Optional[Actor] = None) -> Order:
        """Order the actor may cancel; raises ConflictError once it is past ASSIGNED"""
        require_role(actor, UserRole.ENDUSER, UserRole.ADMIN)
        order = self.get(order_id, actor)
        if order.status not in REFUND_RATES:
            raise ConflictError(ErrorCodes.ORDER_002)
        return order

    def cancel(self, order_id: str, actor: Optional[Actor] = None) -> CancelResult:
        """
        Cancel a PENDING or ASSIGNED order

        The open job (if any) is cancelled with it. Releasing the assigned drone
        is left to the caller, which owns the fleet registry and must release it
        first while holding the drone lock.
        """
        now = self.clock()
        with self.store.lock(ORDERS, order_id):
            order = self.check_cancellable(order_id, actor)

            refund = refund_for(order)
            drone_id = order.assigned_drone_id if order.status == OrderStatus.ASSIGNED else None
            self.transition(order_id, OrderStatus.CANCELLED, at=now)

            job = self.open_job_for_order(order_id)
            if job is not None:
                self.cancel_job(job.id)

        logger.info(f"Order {order_id} cancelled, refund ${refund}")
        return CancelResult(
            order_id=order_id,
            status=OrderStatus.CANCELLED,
            refund_amount=refund,
            cancelled_at=now,
            released_drone_id=drone_id,
            cancelled_job_id=job.id if job else None,
        )

    def modify(self, order_id: str, reason: str, origin: Optional[Location] = None,
               destination: Optional[Location] = None,
               drone_location: Optional[Location] = None,
               actor: Optional[Actor] = None) -> Order:
        """
        Administrative origin/destination change

        Args:
            order_id: Order to modify
            reason: Required audit reason
            origin: New pickup location (unchanged if None)
            destination: New drop-off location (unchanged if None)
            drone_location: Carrier position, used to recompute the ETA while
                the package is on board

        Returns:
            Modified order with the audit entry appended
        """
        require_role(actor, UserRole.ADMIN)
        if not reason:
            raise ValidationFailure("A reason is required to modify an order")
        if origin is None and destination is None:
            raise ValidationFailure("Nothing to modify: provide origin and/or destination")

        now = self.clock()
        with self.store.lock(ORDERS, order_id):
            order = self.store.require(ORDERS, order_id)
            if order.status.is_terminal:
                raise ConflictError(
                    ErrorCodes.ORDER_002,
                    f"Cannot modify order with status {order.status.value}"
                )

            new_origin = origin or order.origin
            new_destination = destination or order.destination
            order.modification_history.append(OrderModification(
                modified_by=actor.id if actor else "system",
                reason=reason,
                previous_origin=order.origin,
                previous_destination=order.destination,
                new_origin=new_origin,
                new_destination=new_destination,
                created_at=now,
            ))
            order.origin = new_origin
            order.destination = new_destination

            if order.status in (OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT) and drone_location:
                remaining = distance_between(drone_location, new_destination)
                order.estimated_delivery_time = estimate_eta(
                    remaining, self.config.default_speed_kmh, now
                )
            order.updated_at = now
            self.store.update(ORDERS, order)

            if origin is not None:
                self._move_delivery_pickup(order_id, new_origin)

        logger.info(f"Order {order_id} modified by {order.modification_history[-1].modified_by}: {reason}")
        return order

    def _move_delivery_pickup(self, order_id: str, pickup: Location):
        """Keep the open delivery job's pickup point on the order origin"""
        job = self.open_job_for_order(order_id)
        if job is None or job.type != JobType.DELIVERY:
            return
        with self.store.lock(JOBS, job.id):
            job = self.store.require(JOBS, job.id)
            if job.status in OPEN_JOB_STATUSES:
                job.pickup_location = pickup
                self.store.update(JOBS, job)

    # ========================================================================
    # JOBS
    # ========================================================================

    def create_job(self, order_id: str, job_type: JobType, pickup_location: Location,
                   broken_drone_id: Optional[str] = None) -> Job:
        """
        Create a PENDING job for an order

        Rescue jobs are HIGH priority, deliveries MEDIUM.

        Raises:
            ConflictError: the order already has a non-cancelled job
        """
        if job_type == JobType.RESCUE and not broken_drone_id:
            raise ValidationFailure("Rescue jobs must reference the broken drone")

        with self.store.lock(ORDERS, order_id):
            self.store.require(ORDERS, order_id)
            existing = self.active_job_for_order(order_id)
            if existing is not None:
                raise ConflictError(
                    ErrorCodes.DRONE_002,
                    f"Order {order_id} already has job {existing.id} ({existing.status.value})"
                )

            job = Job(
                id=new_id("JOB"),
                type=job_type,
                order_id=order_id,
                pickup_location=pickup_location,
                priority=JOB_PRIORITIES[job_type],
                broken_drone_id=broken_drone_id if job_type == JobType.RESCUE else None,
                created_at=self.clock(),
            )
            self.store.add(JOBS, job)

        logger.info(f"{job_type.value.capitalize()} job {job.id} created for order {order_id}")
        return job

    def get_job(self, job_id: str) -> Job:
        return self.store.require(JOBS, job_id)

    def jobs_for_order(self, order_id: str) -> List[Job]:
        jobs = self.store.find(JOBS, lambda j: j.order_id == order_id)
        return sorted(jobs, key=lambda j: j.created_at)

    def active_job_for_order(self, order_id: str) -> Optional[Job]:
        """The order's single non-cancelled job, if any"""
        for job in self.jobs_for_order(order_id):
            if job.status != JobStatus.CANCELLED:
                return job
        return None

    def open_job_for_order(self, order_id: str) -> Optional[Job]:
        job = self.active_job_for_order(order_id)
        if job is not None and job.status in OPEN_JOB_STATUSES:
            return job
        return None

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        jobs = self.store.find(JOBS, lambda j: status is None or j.status == status)
        return sorted(jobs, key=lambda j: j.created_at)

    def cancel_job(self, job_id: str) -> Job:
        return self._finish_job(job_id, JobStatus.CANCELLED)

    def complete_job(self, job_id: str) -> Job:
        return self._finish_job(job_id, JobStatus.COMPLETED)

    def _finish_job(self, job_id: str, status: JobStatus) -> Job:
        with self.store.lock(JOBS, job_id):
            job = self.store.require(JOBS, job_id)
            if job.status not in OPEN_JOB_STATUSES:
                raise ConflictError(
                    ErrorCodes.JOB_002,
                    f"Job {job_id} is already {job.status.value}"
                )
            job.status = status
            job.completed_at = self.clock()
            self.store.update(JOBS, job)
        logger.debug(f"Job {job_id} -> {status.value}")
        return job

    def orders_missing_jobs(self, status: OrderStatus) -> List[Order]:
        """Orders in status that have no open job"""
        return [
            order for order in self.list_orders(status=status)
            if self.open_job_for_order(order.id) is None
        ]
