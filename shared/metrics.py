"""
Shared metrics configuration for the SWR cache.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry


class MetricsCollector:
    """Centralized Prometheus metrics for one cache store.

    Metrics are created against ``registry``; with the default ``None`` they
    are not registered anywhere, so several stores can live in one process.
    """

    def __init__(self, namespace: str = "swr_cache", registry: Optional[CollectorRegistry] = None):
        self.namespace = namespace
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up cache metrics."""

        # Fetch metrics
        self._metrics["fetch_total"] = Counter(
            "fetch_total",
            "Total settled fetch tasks",
            ["kind", "result"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["fetch_duration_seconds"] = Histogram(
            "fetch_duration_seconds",
            "Fetch task duration in seconds, retries included",
            ["kind"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["fetch_retries_total"] = Counter(
            "fetch_retries_total",
            "Total retry attempts",
            ["kind"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["dedupe_joins_total"] = Counter(
            "dedupe_joins_total",
            "Fetch triggers that joined an in-flight task",
            ["kind"],
            namespace=self.namespace,
            registry=self.registry
        )

        # Registry metrics
        self._metrics["evictions_total"] = Counter(
            "evictions_total",
            "Total evicted entries",
            ["reason"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["entries"] = Gauge(
            "entries",
            "Number of live entries",
            ["kind"],
            namespace=self.namespace,
            registry=self.registry
        )

        # Signal metrics
        self._metrics["signals_total"] = Counter(
            "signals_total",
            "Total environment signals received",
            ["signal", "event"],
            namespace=self.namespace,
            registry=self.registry
        )

    def record_fetch(self, kind: str, result: str, duration: float):
        """Record a settled fetch task."""
        self._metrics["fetch_total"].labels(kind=kind, result=result).inc()
        self._metrics["fetch_duration_seconds"].labels(kind=kind).observe(duration)

    def record_eviction(self, reason: str):
        """Record an evicted entry."""
        self._metrics["evictions_total"].labels(reason=reason).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def increment_gauge(self, metric_name: str, amount: float = 1, **labels):
        """Increment a gauge metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc(amount)

    def decrement_gauge(self, metric_name: str, amount: float = 1, **labels):
        """Decrement a gauge metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).dec(amount)

