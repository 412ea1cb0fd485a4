"""Request and tool timing metrics.

Metrics are Prometheus collectors on a registry owned by the ``Metrics``
instance, so several instances (one per app, one per test) never collide.
The FastAPI app exposes the registry at ``/metrics``.
"""

from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

from shared.logging import get_logger

logger = get_logger(__name__)

__all__ = ["CONTENT_TYPE_LATEST", "Metrics", "get_metrics", "set_metrics"]

# Generation calls take minutes; the default buckets stop at 10s
LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0)


class Metrics:
    """
    Prometheus metrics for the control plane.

    Responsibilities:
    - Count requests per intent and outcome, and time them
    - Count tool calls per tool and outcome, and time them
    - Count requests refused by the rate limiter
    - Warn about operations slower than ``slow_operation_ms``
    """

    def __init__(
        self,
        enabled: bool = True,
        slow_operation_ms: float = 5000.0,
        registry: Optional[CollectorRegistry] = None
    ) -> None:
        self.enabled = enabled
        self.slow_operation_ms = slow_operation_ms
        self.registry = registry if registry is not None else CollectorRegistry()

        self.requests = Counter(
            "control_plane_requests",
            "Requests by intent and outcome",
            ["intent", "outcome"],
            registry=self.registry,
        )
        self.request_duration = Histogram(
            "control_plane_request_duration_seconds",
            "Request duration by intent",
            ["intent"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.tool_calls = Counter(
            "control_plane_tool_calls",
            "Tool calls by tool and outcome",
            ["tool", "outcome"],
            registry=self.registry,
        )
        self.tool_duration = Histogram(
            "control_plane_tool_duration_seconds",
            "Tool call duration by tool",
            ["tool"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "control_plane_rate_limited",
            "Requests refused by the rate limiter, by tool",
            ["tool"],
            registry=self.registry,
        )

    def _warn_if_slow(self, kind: str, name: str, duration_ms: float) -> None:
        if duration_ms > self.slow_operation_ms:
            logger.warning(
                "Slow operation",
                kind=kind,
                name=name,
                duration_ms=round(duration_ms, 2),
                threshold_ms=self.slow_operation_ms
            )

    def record_request(self, intent: str, success: bool, duration_ms: float) -> None:
        """
        Record a finished request.

        Args:
            intent: Qualified action (``newsletter.generate``) or ``unmatched``
            success: Whether the response was a success envelope
            duration_ms: Time spent in the pipeline
        """
        if not self.enabled:
            return
        self.requests.labels(intent=intent, outcome="success" if success else "failure").inc()
        self.request_duration.labels(intent=intent).observe(max(0.0, duration_ms / 1000))
        self._warn_if_slow("request", intent, duration_ms)

    def record_tool(self, tool: str, success: bool, duration_ms: float) -> None:
        if not self.enabled:
            return
        self.tool_calls.labels(tool=tool, outcome="success" if success else "failure").inc()
        self.tool_duration.labels(tool=tool).observe(max(0.0, duration_ms / 1000))
        self._warn_if_slow("tool", tool, duration_ms)

    def record_rate_limited(self, tool: str) -> None:
        if self.enabled:
            self.rate_limited.labels(tool=tool).inc()

    def value(self, name: str, **labels: str) -> float:
        """Current value of a sample, 0 when it was never recorded."""
        return self.registry.get_sample_value(name, labels) or 0.0

    def payload(self) -> bytes:
        """Text exposition of every metric in this registry."""
        return generate_latest(self.registry)


# Global metrics instance
_metrics: Optional[Metrics] = None


def get_metrics() -> Metrics:
    global _metrics
    if _metrics is None:
        _metrics = Metrics()
    return _metrics


def set_metrics(metrics: Optional[Metrics]) -> None:
    global _metrics
    _metrics = metrics
