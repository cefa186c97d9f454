"""
Monitoring

Prometheus metrics for tile fetches and generation runs.
"""

from .metrics import MetricsCollector, MetricValue

__all__ = [
    "MetricsCollector",
    "MetricValue",
]
