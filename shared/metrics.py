"""
Shared metrics configuration for the cacher package.
"""

from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, Info, start_http_server, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for cache coordinators."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up cache coordination metrics."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total cache hits",
            ["cache_type"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total cache misses",
            ["cache_type"],
            registry=self.registry
        )

        self._metrics["cache_fetch_total"] = Counter(
            "cache_fetch_total",
            "Total fetch function executions",
            ["cache_type", "result"],
            registry=self.registry
        )

        self._metrics["cache_fetch_duration_seconds"] = Histogram(
            "cache_fetch_duration_seconds",
            "Fetch function duration in seconds",
            ["cache_type"],
            registry=self.registry
        )

        self._metrics["cache_lock_acquire_total"] = Counter(
            "cache_lock_acquire_total",
            "Distributed lock acquisition attempts",
            ["result"],
            registry=self.registry
        )

        self._metrics["cache_lock_lost_total"] = Counter(
            "cache_lock_lost_total",
            "Locks lost before the holder released them",
            registry=self.registry
        )

        self._metrics["cache_wait_total"] = Counter(
            "cache_wait_total",
            "Waits on another caller's fetch",
            ["cache_type", "outcome"],
            registry=self.registry
        )

        self._metrics["cache_prefix_deleted_total"] = Counter(
            "cache_prefix_deleted_total",
            "Keys removed by prefix deletion",
            ["cache_type"],
            registry=self.registry
        )

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        start_http_server(port, registry=self.registry)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            if operation_name in self._metrics:
                self._metrics[operation_name].labels(**labels).observe(duration)

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        if metric_name not in self._metrics:
            return
        metric = self._metrics[metric_name]
        if labels:
            metric = metric.labels(**labels)
        metric.inc(amount)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).observe(value)

    def sample(self, metric_name: str, **labels) -> Optional[float]:
        """Read the current value of a metric sample from the registry."""
        return self.registry.get_sample_value(metric_name, labels or None)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
