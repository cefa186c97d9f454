"""
Metrics Collection

Prometheus-backed metrics for the generation engine. Each collector owns its
own ``CollectorRegistry`` so several generators (or test cases) can live in
one process without duplicate-registration errors.

Tracked:
- Tile fetch outcomes per source
- Generation runs per export format and final status
- Generation duration
- Progress of the run in flight
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Union

import structlog
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    push_to_gateway,
)


@dataclass
class MetricValue:
    """Represents a single metric value with metadata."""
    name: str
    value: Union[int, float]
    timestamp: datetime
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """
    Metrics collector for tile-set generation.

    Values are forwarded to Prometheus when a metric of that name is
    registered and are also kept in a bounded in-memory buffer for
    summaries.
    """

    def __init__(
        self,
        enable_prometheus: bool = True,
        prometheus_gateway: Optional[str] = None,
        buffer_size: int = 10000
    ):
        """
        Initialize the metrics collector.

        Args:
            enable_prometheus: Forward values to the Prometheus registry
            prometheus_gateway: Prometheus pushgateway address
            buffer_size: Number of recent values kept for summaries
        """
        self.enable_prometheus = enable_prometheus
        self.prometheus_gateway = prometheus_gateway

        self.logger = structlog.get_logger(component="MetricsCollector")

        self.metrics_buffer = deque(maxlen=buffer_size)
        self.counter_totals: Dict[str, float] = defaultdict(float)
        self.lock = threading.RLock()

        self.prometheus_registry = CollectorRegistry()
        self.prometheus_counters: Dict[str, Counter] = {}
        self.prometheus_histograms: Dict[str, Histogram] = {}
        self.prometheus_gauges: Dict[str, Gauge] = {}

        if self.enable_prometheus:
            self._init_prometheus()

    def _init_prometheus(self) -> None:
        """Register the generation metrics."""
        self._create_prometheus_metric(
            'counter', 'tile_fetch_total',
            'Tile fetch attempts by source and outcome',
            ['source', 'status']
        )
        self._create_prometheus_metric(
            'counter', 'generation_runs_total',
            'Generation runs by export format and final status',
            ['export_format', 'status']
        )
        self._create_prometheus_metric(
            'histogram', 'generation_duration_seconds',
            'Wall-clock duration of generation runs',
            ['export_format']
        )
        self._create_prometheus_metric(
            'counter', 'quota_refunds_total',
            'Downloads refunded after failed runs',
            []
        )
        self._create_prometheus_metric(
            'gauge', 'generation_progress_ratio',
            'Fraction of tiles attempted in the current run',
            []
        )

    def _create_prometheus_metric(
        self,
        metric_type: str,
        name: str,
        description: str,
        labels: List[str] = None
    ) -> None:
        if labels is None:
            labels = []

        if metric_type == 'counter':
            self.prometheus_counters[name] = Counter(
                name, description, labels, registry=self.prometheus_registry
            )
        elif metric_type == 'histogram':
            self.prometheus_histograms[name] = Histogram(
                name, description, labels, registry=self.prometheus_registry
            )
        elif metric_type == 'gauge':
            self.prometheus_gauges[name] = Gauge(
                name, description, labels, registry=self.prometheus_registry
            )
        else:
            raise ValueError(f"Unsupported metric type: {metric_type}")

    def _store(self, name: str, value: Union[int, float], labels: Dict[str, str]) -> None:
        self.metrics_buffer.append(
            MetricValue(name=name, value=value, timestamp=datetime.utcnow(), labels=dict(labels))
        )

    def increment_counter(
        self,
        name: str,
        value: Union[int, float] = 1,
        labels: Dict[str, str] = None
    ) -> None:
        """
        Increment a counter metric.

        Args:
            name: Metric name
            value: Value to increment by
            labels: Metric labels
        """
        labels = labels or {}
        with self.lock:
            self._store(name, value, labels)
            self.counter_totals[name] += value

            if self.enable_prometheus and name in self.prometheus_counters:
                metric = self.prometheus_counters[name]
                (metric.labels(**labels) if labels else metric).inc(value)

    def record_histogram(
        self,
        name: str,
        value: float,
        labels: Dict[str, str] = None
    ) -> None:
        """Record an observation for a histogram metric."""
        labels = labels or {}
        with self.lock:
            self._store(name, value, labels)

            if self.enable_prometheus and name in self.prometheus_histograms:
                metric = self.prometheus_histograms[name]
                (metric.labels(**labels) if labels else metric).observe(value)

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: Dict[str, str] = None
    ) -> None:
        """Set a gauge metric value."""
        labels = labels or {}
        with self.lock:
            self._store(name, value, labels)

            if self.enable_prometheus and name in self.prometheus_gauges:
                metric = self.prometheus_gauges[name]
                (metric.labels(**labels) if labels else metric).set(value)

    def time_function(self, name: str, labels: Dict[str, str] = None):
        """Decorator recording the wrapped function's duration into a histogram."""
        def decorator(func: Callable) -> Callable:
            def wrapper(*args, **kwargs):
                start_time = time.time()
                try:
                    return func(*args, **kwargs)
                finally:
                    self.record_histogram(name, time.time() - start_time, labels)
            return wrapper
        return decorator

    def get_counter_total(self, name: str) -> float:
        """Sum of all increments of a counter since start, across labels."""
        with self.lock:
            return self.counter_totals.get(name, 0)

    def get_metric_summary(self, metric_name: str, hours: int = 1) -> Dict[str, float]:
        """
        Summarize recent values of one metric.

        Args:
            metric_name: Metric to summarize
            hours: Look-back window

        Returns:
            count/sum/min/max/avg of the values in the window, empty if none
        """
        cutoff = datetime.utcnow() - timedelta(hours=hours)
        with self.lock:
            values = [
                m.value for m in self.metrics_buffer
                if m.name == metric_name and m.timestamp >= cutoff
            ]

        if not values:
            return {}

        return {
            'count': len(values),
            'sum': sum(values),
            'min': min(values),
            'max': max(values),
            'avg': sum(values) / len(values),
        }

    def export_metrics(self) -> bytes:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(self.prometheus_registry)

    def push_to_prometheus_gateway(self, job_name: str = "geopulse_generation") -> bool:
        """Push the registry to the configured pushgateway."""
        if not self.enable_prometheus or not self.prometheus_gateway:
            return False

        try:
            push_to_gateway(
                self.prometheus_gateway,
                job=job_name,
                registry=self.prometheus_registry
            )
            self.logger.info("Metrics pushed to Prometheus gateway", gateway=self.prometheus_gateway)
            return True
        except OSError as e:
            self.logger.error("Failed to push metrics to Prometheus gateway", error=str(e))
            return False
