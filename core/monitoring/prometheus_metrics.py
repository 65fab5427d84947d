"""
Prometheus metrics for the connection pool, streaming and lifecycle.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional
import time


class PrometheusMetricsCollector:
    """Broker gateway metrics for Prometheus"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Connection pool
        self.handshakes = Counter(
            'broker_connection_handshakes_total',
            'Connect handshakes attempted',
            ['broker', 'status'],
            registry=self.registry
        )
        self.handshake_latency = Histogram(
            'broker_connection_handshake_seconds',
            'Connect handshake latency',
            ['broker'],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry
        )
        self.active_handles = Gauge(
            'broker_connection_pool_handles',
            'Connection handles currently cached',
            registry=self.registry
        )
        self.evictions = Counter(
            'broker_connection_evictions_total',
            'Handles removed from the pool',
            ['broker', 'reason'],
            registry=self.registry
        )
        self.cache_hits = Counter(
            'broker_connection_pool_hits_total',
            'get_or_create calls served from the cache',
            ['broker'],
            registry=self.registry
        )

        # Broker operations
        self.remote_failures = Counter(
            'broker_remote_failures_total',
            'Remote broker calls that failed',
            ['broker', 'operation'],
            registry=self.registry
        )
        self.orders_placed = Counter(
            'broker_orders_placed_total',
            'Orders dispatched to the broker',
            ['broker', 'status'],
            registry=self.registry
        )

        # Streaming
        self.ticks_received = Counter(
            'broker_ticks_received_total',
            'Ticks received from broker streams',
            ['broker'],
            registry=self.registry
        )
        self.ticks_dropped = Counter(
            'broker_ticks_dropped_total',
            'Ticks dropped because the tick channel was full',
            ['broker'],
            registry=self.registry
        )
        self.stream_status = Gauge(
            'broker_stream_connected',
            'Stream status (1=connected, 0=disconnected)',
            ['broker', 'key'],
            registry=self.registry
        )

        # Lifecycle
        self.sweeps = Counter(
            'broker_session_sweeps_total',
            'Session sweeps run',
            ['status'],
            registry=self.registry
        )
        self.last_sweep_timestamp = Gauge(
            'broker_session_last_sweep_timestamp_unix',
            'Completion time of the last sweep (unix seconds)',
            registry=self.registry
        )
        self.shutdown_tasks = Counter(
            'broker_shutdown_tasks_total',
            'Shutdown task outcomes',
            ['task', 'status'],
            registry=self.registry
        )

    def record_handshake(self, broker: str, success: bool, duration_seconds: float):
        """Record a connect handshake"""
        self.handshakes.labels(broker=broker, status="success" if success else "failure").inc()
        self.handshake_latency.labels(broker=broker).observe(duration_seconds)

    def set_active_handles(self, count: int):
        self.active_handles.set(count)

    def record_eviction(self, broker: str, reason: str):
        self.evictions.labels(broker=broker, reason=reason).inc()

    def record_cache_hit(self, broker: str):
        self.cache_hits.labels(broker=broker).inc()

    def record_remote_failure(self, broker: str, operation: str):
        self.remote_failures.labels(broker=broker, operation=operation).inc()

    def record_order(self, broker: str, status: str):
        self.orders_placed.labels(broker=broker, status=status).inc()

    def record_ticks(self, broker: str, received: int, dropped: int = 0):
        """Record a batch of ticks from one stream callback"""
        if received:
            self.ticks_received.labels(broker=broker).inc(received)
        if dropped:
            self.ticks_dropped.labels(broker=broker).inc(dropped)

    def set_stream_status(self, broker: str, key: str, connected: bool):
        self.stream_status.labels(broker=broker, key=key).set(1 if connected else 0)

    def record_sweep(self, success: bool):
        """Record a completed sweep run"""
        self.sweeps.labels(status="success" if success else "failure").inc()
        self.last_sweep_timestamp.set(time.time())

    def record_shutdown_task(self, task: str, status: str):
        self.shutdown_tasks.labels(task=task, status=status).inc()


def create_metrics_collector() -> PrometheusMetricsCollector:
    """Factory function to create metrics collector"""
    return PrometheusMetricsCollector()


def get_metrics_for_testing() -> PrometheusMetricsCollector:
    """Get metrics collector with custom registry for testing"""
    return PrometheusMetricsCollector(registry=CollectorRegistry())
