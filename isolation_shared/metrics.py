"""
Shared metrics configuration for the Tenancy Isolation Layer.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest


class MetricsCollector:
    """Centralized metrics collector for the isolation engine.

    Each collector owns its registry unless one is passed in, so several
    engines can live in one process (and in one test session) without
    duplicate-timeseries errors.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up isolation metrics."""

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

        # Access control
        self._metrics["access_decisions_total"] = Counter(
            "access_decisions_total",
            "Total access decisions",
            ["decision", "reason"],
            registry=self.registry
        )

        self._metrics["access_decision_duration_seconds"] = Histogram(
            "access_decision_duration_seconds",
            "Access decision duration in seconds",
            registry=self.registry
        )

        # Audit
        self._metrics["audit_writes_total"] = Counter(
            "audit_writes_total",
            "Total audit writes",
            ["status"],
            registry=self.registry
        )

        # Security monitor
        self._metrics["security_events_total"] = Counter(
            "security_events_total",
            "Total security events",
            ["event_type", "severity"],
            registry=self.registry
        )

        # Cache
        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total cache hits",
            ["namespace"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total cache misses",
            ["namespace"],
            registry=self.registry
        )

        self._metrics["cache_evictions_total"] = Counter(
            "cache_evictions_total",
            "Total cache evictions",
            ["strategy"],
            registry=self.registry
        )

        # Context manager
        self._metrics["context_history_size"] = Gauge(
            "context_history_size",
            "Number of contexts held in the history buffer",
            registry=self.registry
        )

    def record_decision(self, allowed: bool, reason: str, duration: float):
        """Record an access decision."""
        decision = "allow" if allowed else "deny"
        self._metrics["access_decisions_total"].labels(decision=decision, reason=reason).inc()
        self._metrics["access_decision_duration_seconds"].observe(duration)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc(amount)

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).set(value)

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read back a sample from this collector's registry."""
        return self.registry.get_sample_value(name, labels or {})

    def render(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

