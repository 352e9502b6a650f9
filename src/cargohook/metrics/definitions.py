"""Prometheus metrics definitions for cargohook."""

from prometheus_client import Counter, Gauge, Histogram

# HTTP Request metrics
REQUEST_TOTAL = Counter(
    "cargohook_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "cargohook_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

REQUESTS_IN_PROGRESS = Gauge(
    "cargohook_requests_in_progress",
    "HTTP requests currently being served",
    ["method"],
)

# Webhook attempt metrics
WEBHOOK_ATTEMPTS_TOTAL = Counter(
    "cargohook_webhook_attempts_total",
    "Total webhook delivery attempts",
    ["outcome"],  # success, retryable, terminal
)

WEBHOOK_ATTEMPT_DURATION = Histogram(
    "cargohook_webhook_attempt_duration_seconds",
    "Webhook delivery attempt duration in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Final state of each delivery run
WEBHOOK_DELIVERIES_TOTAL = Counter(
    "cargohook_webhook_deliveries_total",
    "Total webhook deliveries by final state",
    ["status"],  # delivered, failed, exhausted
)

WEBHOOK_PIPELINES_IN_FLIGHT = Gauge(
    "cargohook_webhook_pipelines_in_flight",
    "Delivery pipelines currently running",
)

WEBHOOK_DISPATCH_ERRORS_TOTAL = Counter(
    "cargohook_webhook_dispatch_errors_total",
    "Delivery pipelines aborted by an internal error",
)
