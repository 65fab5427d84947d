"""
Monitoring components for the broker gateway
"""

from .prometheus_metrics import (
    PrometheusMetricsCollector,
    create_metrics_collector,
    get_metrics_for_testing,
)

__all__ = [
    "PrometheusMetricsCollector",
    "create_metrics_collector",
    "get_metrics_for_testing",
]
