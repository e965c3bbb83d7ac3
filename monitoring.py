# Monitoring & Metrics
# File: monitoring.py

"""
Metrics collection and health monitoring for the dispatch engine.

Components record counters (heartbeats, reservations, breakages, dropped
messages) into a shared MetricsCollector; the HealthMonitor runs periodic
checks of the message bus, the fleet, the job queue and host resources.
"""

import statistics
import threading
import time
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)

HEALTHY = 'healthy'
DEGRADED = 'degraded'
UNHEALTHY = 'unhealthy'

# ============================================================================
# METRICS
# ============================================================================

@dataclass
class HealthCheck:
    """Health check result"""
    component: str
    status: str  # healthy, degraded, unhealthy
    timestamp: datetime = field(default_factory=datetime.now)
    details: Dict = field(default_factory=dict)
    latency_ms: Optional[float] = None

    def to_dict(self):
        return {
            'component': self.component,
            'status': self.status,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details,
            'latency_ms': self.latency_ms
        }


class MetricsCollector:
    """Thread-safe counters, gauges and histograms keyed by name and labels"""

    def __init__(self, histogram_size: int = 1000):
        self.histogram_size = histogram_size
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, deque] = defaultdict(lambda: deque(maxlen=self.histogram_size))
        self.lock = threading.Lock()

    def record_counter(self, name: str, value: int = 1, labels: Dict = None):
        """Add to a monotonically increasing counter"""
        with self.lock:
            self.counters[self._make_key(name, labels)] += value

    def record_gauge(self, name: str, value: float, labels: Dict = None):
        """Set a value that can go up or down"""
        with self.lock:
            self.gauges[self._make_key(name, labels)] = value

    def record_histogram(self, name: str, value: float, labels: Dict = None):
        """Observe one sample (latency, size)"""
        with self.lock:
            self.histograms[self._make_key(name, labels)].append(value)

    def get_counter(self, name: str, labels: Dict = None) -> int:
        with self.lock:
            return self.counters.get(self._make_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Dict = None) -> float:
        with self.lock:
            return self.gauges.get(self._make_key(name, labels), 0.0)

    def get_histogram_stats(self, name: str, labels: Dict = None) -> Dict:
        """
        Summary statistics for a histogram

        Returns:
            count, min, max, mean, p50, p95, p99 (zeros when empty)
        """
        with self.lock:
            values = sorted(self.histograms.get(self._make_key(name, labels), []))
        return self._summarize(values)

    @staticmethod
    def _summarize(values: List[float]) -> Dict:
        if not values:
            return {'count': 0, 'min': 0, 'max': 0, 'mean': 0, 'p50': 0, 'p95': 0, 'p99': 0}

        count = len(values)
        return {
            'count': count,
            'min': values[0],
            'max': values[-1],
            'mean': statistics.mean(values),
            'p50': values[count // 2],
            'p95': values[min(count - 1, int(count * 0.95))],
            'p99': values[min(count - 1, int(count * 0.99))],
        }

    @staticmethod
    def _make_key(name: str, labels: Dict = None) -> str:
        if not labels:
            return name
        label_str = ','.join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_all_metrics(self) -> Dict:
        with self.lock:
            counters = dict(self.counters)
            gauges = dict(self.gauges)
            histograms = {k: sorted(v) for k, v in self.histograms.items()}
        return {
            'counters': counters,
            'gauges': gauges,
            'histograms': {k: self._summarize(v) for k, v in histograms.items()},
            'timestamp': datetime.now().isoformat()
        }

    def export_prometheus(self) -> str:
        """Render counters and gauges in Prometheus text format"""
        metrics = self.get_all_metrics()
        output = []
        for kind, values in (('counter', metrics['counters']), ('gauge', metrics['gauges'])):
            for name, value in sorted(values.items()):
                output.append(f"# TYPE {name.split('{')[0]} {kind}")
                output.append(f"{name} {value}")
        for name, stats in sorted(metrics['histograms'].items()):
            if stats['count']:
                output.append(f"# TYPE {name} summary")
                output.append(f"{name}_count {stats['count']}")
                output.append(f"{name}{{quantile=\"0.5\"}} {stats['p50']}")
                output.append(f"{name}{{quantile=\"0.99\"}} {stats['p99']}")
        return "\n".join(output)

# ============================================================================
# HEALTH MONITOR
# ============================================================================

class HealthMonitor:
    """Periodic health checks over the running dispatch engine"""

    def __init__(self, engine, metrics: MetricsCollector, check_interval: float = 30):
        """
        Initialize health monitor

        Args:
            engine: DispatchEngine instance
            metrics: Collector receiving fleet gauges on every pass
            check_interval: Seconds between passes
        """
        self.engine = engine
        self.metrics = metrics
        self.check_interval = check_interval
        self.checks: Dict[str, Callable[[], HealthCheck]] = {}
        self.health_history: deque = deque(maxlen=100)
        self.running = False
        self.monitor_thread = None

        self.register_check('message_bus', self._check_message_bus)
        self.register_check('fleet', self._check_fleet)
        self.register_check('job_queue', self._check_job_queue)
        self.register_check('system_resources', self._check_system_resources)

    def register_check(self, name: str, check_fn: Callable[[], HealthCheck]):
        self.checks[name] = check_fn
        logger.debug(f"Registered health check: {name}")

    def start(self):
        if self.running:
            logger.warning("Health monitor already running")
            return
        self.running = True
        self.monitor_thread = threading.Thread(
            target=self._monitor_loop,
            daemon=True,
            name="health-monitor"
        )
        self.monitor_thread.start()
        logger.info("Health monitor started")

    def stop(self):
        self.running = False
        if self.monitor_thread:
            self.monitor_thread.join(timeout=5)
        logger.info("Health monitor stopped")

    def _monitor_loop(self):
        while self.running:
            try:
                results = self.run_checks()
                self.health_history.append({
                    'timestamp': datetime.now().isoformat(),
                    'results': [r.to_dict() for r in results]
                })
                unhealthy = [r.component for r in results if r.status == UNHEALTHY]
                degraded = [r.component for r in results if r.status == DEGRADED]
                if unhealthy:
                    logger.warning(f"Unhealthy components detected: {unhealthy}")
                if degraded:
                    logger.info(f"Degraded components: {degraded}")
            except Exception as e:
                logger.error(f"Health monitoring error: {e}")

            deadline = time.monotonic() + self.check_interval
            while self.running and time.monotonic() < deadline:
                time.sleep(0.5)

    def run_checks(self) -> List[HealthCheck]:
        """Run every registered check; a raising check counts as unhealthy"""
        results = []
        for name, check_fn in self.checks.items():
            start_time = time.time()
            try:
                result = check_fn()
                result.latency_ms = (time.time() - start_time) * 1000
            except Exception as e:
                logger.error(f"Health check failed for {name}: {e}")
                result = HealthCheck(component=name, status=UNHEALTHY, details={'error': str(e)})
            results.append(result)
        return results

    def get_health_status(self) -> Dict:
        results = self.run_checks()
        overall = HEALTHY
        if any(r.status == UNHEALTHY for r in results):
            overall = UNHEALTHY
        elif any(r.status == DEGRADED for r in results):
            overall = DEGRADED

        return {
            'overall_status': overall,
            'checks': [r.to_dict() for r in results],
            'timestamp': datetime.now().isoformat(),
        }

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _check_message_bus(self) -> HealthCheck:
        bus = self.engine.bus
        connected = bus.is_connected()
        return HealthCheck(
            component='message_bus',
            status=HEALTHY if connected else UNHEALTHY,
            details={
                'connected': connected,
                'handlers': sorted(bus.handlers),
                'publish_failures': self.metrics.get_counter('publish_failures'),
                'messages_dropped': self.metrics.get_counter('messages_dropped'),
            }
        )

    def _check_fleet(self) -> HealthCheck:
        summary = self.engine.fleet.fleet_summary()
        by_status = summary['by_status']
        self.metrics.record_gauge('fleet_drones_total', summary['total'])
        self.metrics.record_gauge('fleet_battery_average', summary['average_battery'])
        self.metrics.record_gauge('fleet_active_deliveries', summary['active_deliveries'])
        for status, count in by_status.items():
            self.metrics.record_gauge('fleet_drones_by_status', count, labels={'status': status})

        unavailable = by_status.get('offline', 0) + by_status.get('broken', 0)
        status = HEALTHY
        if summary['total'] and unavailable == summary['total']:
            status = UNHEALTHY
        elif summary['total'] and unavailable / summary['total'] > 0.5:
            status = DEGRADED

        return HealthCheck(component='fleet', status=status, details=summary)

    def _check_job_queue(self) -> HealthCheck:
        pending = self.engine.scheduler.pending_count()
        self.metrics.record_gauge('jobs_pending', pending)
        reconciler_running = self.engine.reconciler.running
        return HealthCheck(
            component='job_queue',
            status=HEALTHY if reconciler_running else DEGRADED,
            details={'pending_jobs': pending, 'reconciler_running': reconciler_running}
        )

    def _check_system_resources(self) -> HealthCheck:
        cpu_percent = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')
        self.metrics.record_gauge('system_cpu_percent', cpu_percent)
        self.metrics.record_gauge('system_memory_percent', memory.percent)

        status = HEALTHY
        if cpu_percent > 90 or memory.percent > 90 or disk.percent > 90:
            status = UNHEALTHY
        elif cpu_percent > 70 or memory.percent > 70 or disk.percent > 80:
            status = DEGRADED

        return HealthCheck(
            component='system_resources',
            status=status,
            details={
                'cpu_percent': cpu_percent,
                'memory_percent': memory.percent,
                'memory_available_gb': memory.available / (1024 ** 3),
                'disk_percent': disk.percent,
            }
        )
