"""cargohook Prometheus metrics."""

from cargohook.metrics.definitions import (
    REQUEST_DURATION,
    REQUEST_TOTAL,
    REQUESTS_IN_PROGRESS,
    WEBHOOK_ATTEMPT_DURATION,
    WEBHOOK_ATTEMPTS_TOTAL,
    WEBHOOK_DELIVERIES_TOTAL,
    WEBHOOK_DISPATCH_ERRORS_TOTAL,
    WEBHOOK_PIPELINES_IN_FLIGHT,
)
from cargohook.metrics.middleware import MetricsMiddleware

__all__ = [
    "MetricsMiddleware",
    "REQUEST_TOTAL",
    "REQUEST_DURATION",
    "REQUESTS_IN_PROGRESS",
    "WEBHOOK_ATTEMPTS_TOTAL",
    "WEBHOOK_ATTEMPT_DURATION",
    "WEBHOOK_DELIVERIES_TOTAL",
    "WEBHOOK_DISPATCH_ERRORS_TOTAL",
    "WEBHOOK_PIPELINES_IN_FLIGHT",
]
