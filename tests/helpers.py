"""Shared builders and fakes for the dispatch engine tests."""

import json
import time
from datetime import datetime, timedelta

from kafka.errors import KafkaError

from config import DispatchConfig
from fleet_registry import FleetRegistry
from job_scheduler import JobScheduler
from models import Drone, DroneStatus, JobType, Location, OrderStatus, PackageDetails
from monitoring import MetricsCollector
from order_ledger import OrderLedger
from rescue_workflow import BreakageWorkflow
from state_store import DRONES, ORDERS, StateStore
from telemetry import TelemetryProcessor

SF = Location(latitude=37.7749, longitude=-122.4194)
NEARBY = Location(latitude=37.7849, longitude=-122.4294)
FAR_AWAY = Location(latitude=38.5816, longitude=-121.4944)  # Sacramento


class FakeClock:
    """Manually advanced time source"""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeFuture:
    def __init__(self, error=None):
        self.error = error
        self.waited = False

    def get(self, timeout=None):
        self.waited = True
        if self.error is not None:
            raise self.error
        return None


class FakeProducer:
    """Records sends instead of talking to a broker"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []
        self.futures = []
        self.closed = False

    def send(self, topic, value=None, key=None):
        self.sent.append({'topic': topic, 'value': value, 'key': key})
        future = FakeFuture(KafkaError("broker unavailable") if self.fail else None)
        self.futures.append(future)
        return future

    def flush(self, timeout=None):
        pass

    def close(self):
        self.closed = True

    def on_topic(self, topic):
        return [m['value'] for m in self.sent if m['topic'] == topic]


class FakeConsumer:
    """Consumer that never receives anything"""

    def __init__(self):
        self.pattern = None
        self.closed = False

    def subscribe(self, pattern=None):
        self.pattern = pattern

    def poll(self, timeout_ms=0, max_records=None):
        time.sleep(0.01)
        return {}

    def close(self):
        self.closed = True


def encode(payload) -> bytes:
    return json.dumps(payload).encode('utf-8')


def make_config(**overrides) -> DispatchConfig:
    return DispatchConfig(**overrides)


def make_drone(drone_id: str = "DRN-1", location: Location = SF, **overrides) -> Drone:
    fields = dict(
        id=drone_id,
        model="DX-200",
        current_location=location,
        home_base=SF,
        max_payload=10.0,
        max_range=50.0,
        status=DroneStatus.OPERATIONAL,
        battery_level=90.0,
        capabilities={'standard', 'fragile'},
    )
    fields.update(overrides)
    return Drone(**fields)


def make_package(weight: float = 2.0, fragile: bool = False) -> PackageDetails:
    return PackageDetails(weight=weight, length=30, width=20, height=15, fragile=fragile)


class Core:
    """Dispatch components wired together without the message bus"""

    def __init__(self, config: DispatchConfig = None, clock: FakeClock = None):
        self.config = config or make_config()
        self.clock = clock or FakeClock()
        self.metrics = MetricsCollector()
        self.store = StateStore()
        self.fleet = FleetRegistry(self.store, self.config, self.clock)
        self.ledger = OrderLedger(self.store, self.config, self.clock)
        self.scheduler = JobScheduler(
            self.store, self.fleet, self.ledger, self.config, self.metrics, self.clock
        )
        self.telemetry = TelemetryProcessor(
            self.store, self.fleet, self.ledger, self.config, self.metrics, self.clock
        )
        self.breakage = BreakageWorkflow(
            self.store, self.fleet, self.ledger, self.scheduler, self.metrics, self.clock
        )

    def add_drone(self, drone_id: str = "DRN-1", location: Location = SF, **overrides) -> Drone:
        return self.fleet.register(make_drone(drone_id, location, **overrides))

    def add_order(self, origin: Location = SF, destination: Location = NEARBY,
                  package: PackageDetails = None, user_id: str = "user-1"):
        return self.ledger.create(user_id, origin, destination, package or make_package())

    def add_order_with_job(self, **kwargs):
        order = self.add_order(**kwargs)
        job = self.scheduler.create_job(order.id, JobType.DELIVERY, order.origin)
        return order, job

    def dispatch_to(self, drone_id: str = "DRN-1"):
        """Order with a delivery job reserved by drone_id"""
        order, _ = self.add_order_with_job()
        reservation = self.scheduler.reserve_job(drone_id)
        return self.ledger.get(order.id), reservation


def assert_referentially_consistent(store: StateStore):
    """Every drone's current order points back at the drone and is active"""
    active = {
        OrderStatus.ASSIGNED, OrderStatus.PICKED_UP,
        OrderStatus.IN_TRANSIT, OrderStatus.AWAITING_RESCUE,
    }
    for drone in store.find(DRONES):
        if drone.current_order_id is None:
            continue
        order = store.require(ORDERS, drone.current_order_id)
        assert order.assigned_drone_id == drone.id
        assert order.status in active
