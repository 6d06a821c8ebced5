"""
Shared metrics configuration for the Gantz tool gateway.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
from typing import Dict, Any, Optional
from contextlib import contextmanager


TOOL_DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its own ``CollectorRegistry`` unless one is passed
    in, so several service instances (tests, embedded gateways) can coexist
    in one process without duplicate-timeseries errors.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

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

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "gateway":
            self._setup_gateway_metrics()

    def _setup_gateway_metrics(self):
        """Set up tool gateway metrics."""
        self._metrics["tool_invocations_total"] = Counter(
            "tool_invocations_total",
            "Tool invocations that reached the executor",
            ["tool", "version", "status"],
            registry=self.registry
        )

        self._metrics["tool_invocation_duration_seconds"] = Histogram(
            "tool_invocation_duration_seconds",
            "Tool invocation latency in seconds",
            ["tool", "version"],
            buckets=TOOL_DURATION_BUCKETS,
            registry=self.registry
        )

        self._metrics["tool_timeouts_total"] = Counter(
            "tool_timeouts_total",
            "Tool invocations that exceeded their deadline",
            ["tool", "version"],
            registry=self.registry
        )

        self._metrics["tool_errors_total"] = Counter(
            "tool_errors_total",
            "Tool invocation errors by kind",
            ["tool", "version", "kind"],
            registry=self.registry
        )

        self._metrics["tool_cache_hits_total"] = Counter(
            "tool_cache_hits_total",
            "Tool results served from cache",
            ["tool", "version"],
            registry=self.registry
        )

        self._metrics["tool_cache_misses_total"] = Counter(
            "tool_cache_misses_total",
            "Cache lookups for cacheable tools that missed",
            ["tool", "version"],
            registry=self.registry
        )

        self._metrics["cache_errors_total"] = Counter(
            "cache_errors_total",
            "Cache backend failures (requests fail open)",
            ["operation"],
            registry=self.registry
        )

        self._metrics["auth_failures_total"] = Counter(
            "auth_failures_total",
            "Rejected credentials by kind",
            ["kind"],
            registry=self.registry
        )

        self._metrics["singleflight_shared_total"] = Counter(
            "singleflight_shared_total",
            "Calls that joined an identical in-flight invocation",
            ["tool"],
            registry=self.registry
        )

        self._metrics["inflight_invocations"] = Gauge(
            "inflight_invocations",
            "Tool invocations currently executing",
            registry=self.registry
        )

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Read a sample from this collector's registry (0.0 if never observed)."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0

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

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_tool_invocation(self, tool: str, version: str, status: str, duration: float):
        """Record an invocation that ran through the executor."""
        self._metrics["tool_invocations_total"].labels(tool=tool, version=version, status=status).inc()
        self._metrics["tool_invocation_duration_seconds"].labels(tool=tool, version=version).observe(duration)

    def record_tool_timeout(self, tool: str, version: str):
        self._metrics["tool_timeouts_total"].labels(tool=tool, version=version).inc()

    def record_tool_error(self, tool: str, version: str, kind: str):
        self._metrics["tool_errors_total"].labels(tool=tool, version=version, kind=kind).inc()

    def record_cache_hit(self, tool: str, version: str):
        self._metrics["tool_cache_hits_total"].labels(tool=tool, version=version).inc()

    def record_cache_miss(self, tool: str, version: str):
        self._metrics["tool_cache_misses_total"].labels(tool=tool, version=version).inc()

    def record_cache_error(self, operation: str):
        self._metrics["cache_errors_total"].labels(operation=operation).inc()

    def record_auth_failure(self, kind: str):
        self._metrics["auth_failures_total"].labels(kind=kind).inc()

    def record_singleflight_shared(self, tool: str):
        self._metrics["singleflight_shared_total"].labels(tool=tool).inc()

    @contextmanager
    def track_inflight(self):
        """Context manager counting executing invocations."""
        gauge = self._metrics["inflight_invocations"]
        gauge.inc()
        try:
            yield
        finally:
            gauge.dec()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
