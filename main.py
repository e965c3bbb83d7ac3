# Drone Dispatch Engine
# File: main.py

"""
Dispatch & fleet coordination engine for autonomous delivery drones.

Wires the state store, fleet registry, order ledger, job scheduler, telemetry
processor and rescue workflow together with the Kafka message bus, and exposes
them through a single facade plus a small operator CLI.
"""

import logging
import sys
from contextlib import nullcontext
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from kafka.errors import KafkaError

from config import DispatchConfig
from drone_gateway import DroneGateway
from errors import DispatchError
from fleet_registry import FleetRegistry
from fleet_seeder import seed_fleet
from job_scheduler import JobReconciler, JobScheduler, Reservation
from kafka_integration import KafkaMessageBus
from models import (
    Actor, Drone, DroneStatus, JobType, Location, Order, OrderStatus,
    PackageDetails, Severity, UserRole, require_role, to_dict,
)
from monitoring import HealthMonitor, MetricsCollector
from order_ledger import CancelResult, OrderLedger
from rescue_workflow import BreakageReport, BreakageWorkflow
from state_store import DRONES, ORDERS, StateStore
from telemetry import DeliveryResult, PickupResult, TelemetryProcessor

logger = logging.getLogger(__name__)

# ============================================================================
# DISPATCH ENGINE
# ============================================================================

class DispatchEngine:
    """Central dispatch engine"""

    def __init__(self, config: Optional[DispatchConfig] = None,
                 producer_factory: Optional[Callable[[], Any]] = None,
                 consumer_factory: Optional[Callable[[], Any]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize the engine and all subsystems

        Args:
            config: Dispatch configuration (read from the environment if None)
            producer_factory: Optional Kafka producer factory
            consumer_factory: Optional Kafka consumer factory
            clock: Time source shared by every subsystem
        """
        self.config = config or DispatchConfig.from_env()
        self.status = "stopped"
        self.start_time = None

        self.store = StateStore(snapshot_path=self.config.snapshot_path)
        self.store.restore()

        self.metrics = MetricsCollector()
        self.fleet = FleetRegistry(self.store, self.config, clock)
        self.ledger = OrderLedger(self.store, self.config, clock)
        self.scheduler = JobScheduler(
            self.store, self.fleet, self.ledger, self.config, self.metrics, clock
        )
        self.telemetry = TelemetryProcessor(
            self.store, self.fleet, self.ledger, self.config, self.metrics, clock
        )
        self.breakage = BreakageWorkflow(
            self.store, self.fleet, self.ledger, self.scheduler, self.metrics, clock
        )

        self.bus = KafkaMessageBus(
            self.config,
            producer_factory=producer_factory,
            consumer_factory=consumer_factory,
            metrics=self.metrics,
        )
        self.gateway = DroneGateway(self.bus, self.telemetry, self.breakage, self.metrics)
        self.gateway.register_handlers()

        self.reconciler = JobReconciler(self.scheduler, self.config)
        self.health_monitor = HealthMonitor(self, self.metrics)

        self.scheduler.rebuild()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the message bus and background workers"""
        if self.status == "running":
            logger.warning("Dispatch engine already running")
            return

        if self.config.seed_fleet:
            seed_fleet(self.fleet)

        try:
            self.bus.start()
        except KafkaError as e:
            logger.error(f"Message bus unavailable, running without drone messaging: {e}")

        self.reconciler.start()
        self.health_monitor.start()

        self.status = "running"
        self.start_time = datetime.now()
        logger.info("Dispatch engine started")

    def stop(self):
        if self.status != "running":
            return
        self.health_monitor.stop()
        self.reconciler.stop()
        self.bus.stop()
        self.status = "stopped"
        logger.info("Dispatch engine stopped")

    def get_status(self) -> Dict[str, Any]:
        """Engine status with fleet and queue statistics"""
        uptime = (datetime.now() - self.start_time).total_seconds() if self.start_time else 0
        return {
            'status': self.status,
            'uptime': f"{int(uptime // 3600)}h {int((uptime % 3600) // 60)}m",
            'uptime_seconds': uptime,
            'message_bus_connected': self.bus.is_connected(),
            'pending_jobs': self.scheduler.pending_count(),
            'orders': len(self.ledger.list_orders()),
            'fleet_stats': self.fleet.fleet_summary(),
            'counters': self.metrics.get_all_metrics()['counters'],
            'latency_ms': {
                'heartbeat_processing': self.metrics.get_histogram_stats('heartbeat_processing_ms'),
                'publish': self.metrics.get_histogram_stats('publish_latency_ms'),
            },
        }

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def create_order(self, user_id: str, origin: Location, destination: Location,
                     package_details: PackageDetails,
                     scheduled_pickup_time: Optional[datetime] = None,
                     actor: Optional[Actor] = None) -> Order:
        """Create an order and queue its delivery job"""
        order = self.ledger.create(
            user_id, origin, destination, package_details, scheduled_pickup_time, actor
        )
        try:
            self.scheduler.create_job(order.id, JobType.DELIVERY, order.origin)
        except DispatchError as e:
            # the reconciler creates it on its next pass
            logger.error(f"Delivery job creation failed for order {order.id}: {e.message}")
        return order

    def get_order(self, order_id: str, actor: Optional[Actor] = None) -> Dict[str, Any]:
        order = self.ledger.get(order_id, actor)
        drone = self.store.get(DRONES, order.assigned_drone_id)
        return self.ledger.get_order_view(order_id, actor, drone)

    def cancel_order(self, order_id: str, actor: Optional[Actor] = None) -> CancelResult:
        """
        Cancel an order, its open job, and release the assigned drone

        The drone lock is taken before the order lock, and the drone is released
        before the order leaves ASSIGNED, so a drone never points at a cancelled
        order.
        """
        while True:
            drone_id = self._assigned_carrier(self.ledger.get(order_id, actor))
            drone_lock = self.store.lock(DRONES, drone_id) if drone_id else nullcontext()
            with drone_lock, self.store.lock(ORDERS, order_id):
                order = self.ledger.check_cancellable(order_id, actor)
                if self._assigned_carrier(order) != drone_id:
                    # Assigned between the read and the locks
                    continue
                if drone_id:
                    drone = self.store.get(DRONES, drone_id)
                    if drone is not None and drone.current_order_id == order_id:
                        self.fleet.release_order(drone_id)
                        logger.info(f"Drone {drone_id} released from cancelled order {order_id}")
                return self.ledger.cancel(order_id, actor)

    @staticmethod
    def _assigned_carrier(order: Order) -> Optional[str]:
        return order.assigned_drone_id if order.status == OrderStatus.ASSIGNED else None

    def modify_order(self, order_id: str, reason: str, origin: Optional[Location] = None,
                     destination: Optional[Location] = None,
                     actor: Optional[Actor] = None) -> Order:
        """
        Change an order's origin and/or destination

        The carrier's position feeds the ETA recomputation. A drone already
        assigned to the order is sent a route change toward the new origin
        before pickup and toward the new destination after it.
        """
        require_role(actor, UserRole.ADMIN)
        current = self.ledger.get(order_id)
        drone = self.store.get(DRONES, current.assigned_drone_id)
        drone_location = drone.current_location if drone else None

        order = self.ledger.modify(order_id, reason, origin, destination, drone_location, actor)

        if drone is not None and drone.current_order_id == order_id:
            if order.status == OrderStatus.ASSIGNED and origin is not None:
                # Not picked up yet: the drone is still heading to the origin
                self.gateway.send_route_change(drone.id, order_id, order.origin, reason)
            elif destination is not None:
                self.gateway.send_route_change(drone.id, order_id, order.destination, reason)
        return order

    def list_orders(self, user_id: Optional[str] = None,
                    status: Optional[OrderStatus] = None,
                    actor: Optional[Actor] = None) -> List[Order]:
        if actor is not None and actor.role == UserRole.ENDUSER:
            user_id = actor.id
        else:
            require_role(actor, UserRole.ADMIN)
        return self.ledger.list_orders(user_id, status)

    # ------------------------------------------------------------------
    # Drone operations
    # ------------------------------------------------------------------

    def reserve_job(self, drone_id: str, actor: Optional[Actor] = None) -> Reservation:
        return self.scheduler.reserve_job(drone_id, actor)

    def confirm_pickup(self, drone_id: str, order_id: str, location: Location,
                       actor: Optional[Actor] = None) -> PickupResult:
        return self.telemetry.confirm_pickup(drone_id, order_id, location, actor)

    def confirm_delivery(self, drone_id: str, order_id: str, location: Location,
                         actor: Optional[Actor] = None) -> DeliveryResult:
        return self.telemetry.confirm_delivery(drone_id, order_id, location, actor)

    def report_delivery_failure(self, drone_id: str, order_id: str, reason: str,
                                actor: Optional[Actor] = None) -> DeliveryResult:
        return self.telemetry.report_delivery_failure(drone_id, order_id, reason, actor)

    def report_broken(self, drone_id: str, location: Location, issue: str,
                      severity: Severity = Severity.MEDIUM,
                      actor: Optional[Actor] = None) -> BreakageReport:
        return self.breakage.report_broken(drone_id, location, issue, severity, actor)

    def get_current_order(self, drone_id: str, actor: Optional[Actor] = None) -> Order:
        return self.telemetry.get_current_order(drone_id, actor)

    # ------------------------------------------------------------------
    # Fleet administration
    # ------------------------------------------------------------------

    def register_drone(self, drone: Drone, actor: Optional[Actor] = None) -> Drone:
        return self.fleet.register(drone, actor)

    def update_drone(self, drone_id: str, actor: Optional[Actor] = None, **changes) -> Drone:
        return self.fleet.update_specs(drone_id, actor, **changes)

    def remove_drone(self, drone_id: str, actor: Optional[Actor] = None):
        self.fleet.remove(drone_id, actor)

    def mark_drone_broken(self, drone_id: str, reason: str,
                          actor: Optional[Actor] = None) -> BreakageReport:
        return self.breakage.mark_broken_by_operator(drone_id, reason, actor)

    def repair_drone(self, drone_id: str, notes: Optional[str] = None,
                     actor: Optional[Actor] = None) -> Drone:
        return self.fleet.repair(drone_id, notes, actor)

    def list_drones(self, status: Optional[DroneStatus] = None,
                    actor: Optional[Actor] = None) -> Dict[str, Any]:
        """Drones with their effective status, plus fleet summary counts"""
        drones = self.fleet.list_drones(status, actor)
        listed = []
        for drone in drones:
            entry = to_dict(drone)
            entry['status'] = self.fleet.status_of(drone).value
            listed.append(entry)
        return {'drones': listed, 'summary': self.fleet.fleet_summary()}

    def request_return_to_base(self, drone_id: str, urgent: bool = False,
                               actor: Optional[Actor] = None) -> bool:
        require_role(actor, UserRole.ADMIN)
        drone = self.fleet.get(drone_id)
        return self.gateway.send_return_to_base(drone_id, drone.home_base, urgent)

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

class CLI:
    """Command Line Interface"""

    def __init__(self, engine: DispatchEngine):
        self.engine = engine
        self.commands = {
            'engine': self._engine_cmd,
            'drone': self._drone_cmd,
            'order': self._order_cmd,
            'job': self._job_cmd,
            'status': self._status_cmd,
            'help': self._help_cmd
        }

    def run(self, args: List[str]):
        """Run CLI command"""
        if not args:
            self._help_cmd([])
            return

        command = args[0]
        if command in self.commands:
            try:
                self.commands[command](args[1:])
            except DispatchError as e:
                print(f"❌ {e.code}: {e.message}")
        else:
            print(f"❌ Unknown command: {command}")
            self._help_cmd([])

    def _engine_cmd(self, args: List[str]):
        if not args:
            print("Usage: engine [start|stop|status|health|metrics]")
            return

        action = args[0]

        if action == 'start':
            self.engine.start()
            print("✅ Engine started")
        elif action == 'stop':
            self.engine.stop()
            print("✅ Engine stopped")
        elif action == 'status':
            self._status_cmd([])
        elif action == 'health':
            health = self.engine.health_monitor.get_health_status()
            print(f"\nOverall: {health['overall_status'].upper()}")
            for check in health['checks']:
                print(f"  {check['component']:<18} {check['status']}")
            print()
        elif action == 'metrics':
            print(self.engine.metrics.export_prometheus())

    def _drone_cmd(self, args: List[str]):
        if not args:
            print("Usage: drone [list|seed|repair|broken|rtb]")
            return

        action = args[0]

        if action == 'list':
            drones = self.engine.list_drones()['drones']
            print(f"\n{'='*90}")
            print(f"{'ID':<18} {'Model':<18} {'Status':<12} {'Battery':<10} {'Order':<18} {'Location'}")
            print(f"{'='*90}")
            for d in drones:
                loc = d['current_location']
                loc_str = f"({loc['latitude']:.4f}, {loc['longitude']:.4f})"
                print(f"{d['id']:<18} {d['model']:<18} {d['status']:<12} "
                      f"{d['battery_level']:<9.1f}% {d['current_order_id'] or 'None':<18} {loc_str}")
            print(f"{'='*90}\n")

        elif action == 'seed':
            seeded = seed_fleet(self.engine.fleet)
            print(f"✅ Seeded {len(seeded)} drones")

        elif action == 'repair':
            if len(args) < 2:
                print("Usage: drone repair <drone_id> [notes]")
                return
            self.engine.repair_drone(args[1], ' '.join(args[2:]) or None)
            print(f"✅ Drone {args[1]} repaired")

        elif action == 'broken':
            if len(args) < 3:
                print("Usage: drone broken <drone_id> <reason>")
                return
            report = self.engine.mark_drone_broken(args[1], ' '.join(args[2:]))
            print(f"✅ {report.message}")

        elif action == 'rtb':
            if len(args) < 2:
                print("Usage: drone rtb <drone_id>")
                return
            sent = self.engine.request_return_to_base(args[1], urgent=True)
            print("✅ Command sent" if sent else "❌ Command not delivered")

    def _order_cmd(self, args: List[str]):
        if not args:
            print("Usage: order [create|list|show|cancel]")
            return

        action = args[0]

        if action == 'list':
            orders = self.engine.list_orders()
            print(f"\n{'='*90}")
            print(f"{'ID':<18} {'User':<12} {'Status':<16} {'Drone':<18} {'Cost'}")
            print(f"{'='*90}")
            for o in orders:
                print(f"{o.id:<18} {o.user_id:<12} {o.status.value:<16} "
                      f"{o.assigned_drone_id or 'None':<18} ${o.cost:.2f}")
            print(f"{'='*90}\n")

        elif action == 'create':
            user_id = input("User ID: ")
            origin = Location(float(input("Origin latitude: ")), float(input("Origin longitude: ")))
            destination = Location(
                float(input("Destination latitude: ")), float(input("Destination longitude: "))
            )
            weight = float(input("Weight (kg): "))
            fragile = input("Fragile (y/n): ").strip().lower() == 'y'
            order = self.engine.create_order(
                user_id, origin, destination,
                PackageDetails(weight=weight, length=30, width=20, height=15, fragile=fragile)
            )
            print(f"✅ Order {order.id} created (${order.cost:.2f})")

        elif action == 'show':
            if len(args) < 2:
                print("Usage: order show <order_id>")
                return
            view = self.engine.get_order(args[1])
            print(f"\nOrder {view['order_id']}: {view['status'].upper()}")
            for entry in view['timeline']:
                print(f"  {entry['status']:<12} {entry['timestamp']}")
            print()

        elif action == 'cancel':
            if len(args) < 2:
                print("Usage: order cancel <order_id>")
                return
            result = self.engine.cancel_order(args[1])
            print(f"✅ Order cancelled, refund ${result.refund_amount:.2f}")

    def _job_cmd(self, args: List[str]):
        if not args:
            print("Usage: job [list|reserve]")
            return

        action = args[0]

        if action == 'list':
            jobs = self.engine.ledger.list_jobs()
            print(f"\n{'='*90}")
            print(f"{'ID':<18} {'Type':<10} {'Priority':<10} {'Status':<12} {'Order':<18} {'Drone'}")
            print(f"{'='*90}")
            for j in jobs:
                print(f"{j.id:<18} {j.type.value:<10} {j.priority.value:<10} "
                      f"{j.status.value:<12} {j.order_id:<18} {j.assigned_drone_id or 'None'}")
            print(f"{'='*90}\n")

        elif action == 'reserve':
            if len(args) < 2:
                print("Usage: job reserve <drone_id>")
                return
            reservation = self.engine.reserve_job(args[1])
            print(f"✅ Job {reservation.job_id} ({reservation.job_type.value}) "
                  f"reserved for order {reservation.order_id}")

    def _status_cmd(self, args: List[str]):
        """Overall system status"""
        status = self.engine.get_status()
        fleet = status['fleet_stats']

        print(f"\n{'='*60}")
        print("DRONE DISPATCH ENGINE")
        print(f"{'='*60}")
        print(f"Engine: {status['status'].upper()}")
        print(f"Uptime: {status['uptime']}")
        print(f"Message bus: {'connected' if status['message_bus_connected'] else 'disconnected'}")
        print(f"\nFleet: {fleet['total']} drones")
        for name, count in sorted(fleet['by_status'].items()):
            print(f"  {name.capitalize()}: {count}")
        print(f"  Active deliveries: {fleet['active_deliveries']}")
        print(f"  Avg Battery: {fleet['average_battery']:.1f}%")
        print(f"\nOrders: {status['orders']}")
        print(f"Pending jobs: {status['pending_jobs']}")
        heartbeat = status['latency_ms']['heartbeat_processing']
        if heartbeat['count']:
            print(f"Heartbeat p95: {heartbeat['p95']:.1f} ms over {heartbeat['count']} samples")
        print(f"{'='*60}\n")

    def _help_cmd(self, args: List[str]):
        """Show help"""
        print("\n" + "="*70)
        print("Drone Dispatch Engine - Operator CLI")
        print("="*70)
        print("\nCommands:")
        print("  engine  - Control the engine (start|stop|status|health|metrics)")
        print("  drone   - Manage drones (list|seed|repair|broken|rtb)")
        print("  order   - Manage orders (create|list|show|cancel)")
        print("  job     - Inspect jobs (list|reserve)")
        print("  status  - Show system status")
        print("  help    - Show this help")
        print("="*70 + "\n")

# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    config = DispatchConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    engine = DispatchEngine(config)
    engine.start()

    cli = CLI(engine)

    if len(sys.argv) > 1:
        cli.run(sys.argv[1:])
        engine.stop()
    else:
        print("\n📋 Type 'help' for commands, 'exit' to quit\n")

        while True:
            try:
                command = input("DISPATCH> ").strip()

                if command.lower() in ['exit', 'quit']:
                    engine.stop()
                    print("👋 Goodbye!")
                    break

                if command:
                    cli.run(command.split())

            except KeyboardInterrupt:
                engine.stop()
                print("\n👋 Goodbye!")
                break
            except ValueError as e:
                print(f"❌ Invalid input: {e}")
