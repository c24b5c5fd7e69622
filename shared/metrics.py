"""
Shared metrics configuration for the entitlement reconciliation engine.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, start_http_server, CollectorRegistry
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector.

    Each collector owns its registry so several engines (tests, multiple
    app instances) never collide on metric names.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common and reconciliation metrics."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_reconciliation_metrics()

    def _setup_reconciliation_metrics(self):
        """Set up entitlement reconciliation metrics."""
        self._metrics["reconciliation_passes_total"] = Counter(
            "reconciliation_passes_total",
            "Reconciliation passes by resulting status and source",
            ["status", "source"],
            registry=self.registry
        )

        self._metrics["backend_requests_total"] = Counter(
            "backend_requests_total",
            "Subscription backend requests",
            ["endpoint", "outcome"],
            registry=self.registry
        )

        self._metrics["backend_request_duration_seconds"] = Histogram(
            "backend_request_duration_seconds",
            "Subscription backend request duration in seconds",
            ["endpoint"],
            registry=self.registry
        )

        self._metrics["store_transactions_total"] = Counter(
            "store_transactions_total",
            "Store transaction updates by outcome",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["scheduler_cycles_total"] = Counter(
            "scheduler_cycles_total",
            "Reconciliation cycles by trigger and outcome",
            ["trigger", "outcome"],
            registry=self.registry
        )

        self._metrics["status_cache_total"] = Counter(
            "status_cache_total",
            "Status cache lookups",
            ["result"],
            registry=self.registry
        )

        self._metrics["entitlement_has_access"] = Gauge(
            "entitlement_has_access",
            "1 when the current entitlement grants access",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        start_http_server(port, registry=self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_pass(self, status: str, source: str, has_access: bool):
        """Record a completed reconciliation pass."""
        self._metrics["reconciliation_passes_total"].labels(status=status, source=source).inc()
        self._metrics["entitlement_has_access"].set(1 if has_access else 0)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def sample(self, metric_name: str, **labels) -> float:
        """Read back a single sample value, 0.0 when absent."""
        value = self.registry.get_sample_value(metric_name, labels or None)
        return value or 0.0


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
