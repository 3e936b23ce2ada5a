"""
Shared metrics configuration for the calorie tracker session client.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest


class MetricsCollector:
    """Prometheus metrics for one session client instance.

    Each collector owns its registry unless one is passed in, so several
    clients in one process (or one test run) never collide on metric names.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up session metrics."""

        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total outbound API requests",
            ["method", "outcome"],
            registry=self.registry
        )

        self._metrics["token_refresh_total"] = Counter(
            "token_refresh_total",
            "Total token refresh attempts",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["token_refresh_duration_seconds"] = Histogram(
            "token_refresh_duration_seconds",
            "Token refresh round-trip duration in seconds",
            registry=self.registry
        )

        self._metrics["session_clears_total"] = Counter(
            "session_clears_total",
            "Total token pair clears",
            ["reason"],
            registry=self.registry
        )

        self._metrics["refresh_in_flight"] = Gauge(
            "refresh_in_flight",
            "1 while a token refresh is in flight",
            registry=self.registry
        )

    def record_http_request(self, method: str, outcome: str):
        """Record an outbound request by outcome (ok, client_error, server_error, network_error...)."""
        self._metrics["http_requests_total"].labels(method=method, outcome=outcome).inc()

    def record_refresh(self, outcome: str, duration: Optional[float] = None):
        """Record a refresh attempt."""
        self._metrics["token_refresh_total"].labels(outcome=outcome).inc()
        if duration is not None:
            self._metrics["token_refresh_duration_seconds"].observe(duration)

    def record_session_clear(self, reason: str):
        """Record a forced or explicit token pair clear."""
        self._metrics["session_clears_total"].labels(reason=reason).inc()

    def set_refresh_in_flight(self, in_flight: bool):
        """Flag an in-flight refresh."""
        self._metrics["refresh_in_flight"].set(1 if in_flight else 0)

    def sample(self, metric_name: str, **labels) -> float:
        """Current value of a counter or gauge sample, 0.0 when never observed."""
        value = self.registry.get_sample_value(metric_name, labels)
        return value or 0.0

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)
