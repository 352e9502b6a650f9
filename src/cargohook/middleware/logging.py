"""Access log for the operator API."""

import logging
import time
import uuid
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("cargohook.access")

REQUEST_ID_HEADER = "X-Request-Id"

# Probed constantly by orchestrators; logged at DEBUG only
QUIET_PATHS = frozenset({"/api/v1/health", "/api/v1/ready", "/metrics"})


def client_address(request: Request) -> str:
    """Original client address, honouring the first X-Forwarded-For hop."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs one line per request and tags the response with a request id.

    Line format: ``IP METHOD PATH STATUS TIME_MS tenant=... rid=...``.
    An incoming ``X-Request-Id`` is reused so operators can correlate a
    retry or test call with their own tooling.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        tenant_id = request.headers.get("X-Tenant-Id", "-")
        start_time = time.perf_counter()

        response: Response = await call_next(request)

        process_time_ms = (time.perf_counter() - start_time) * 1000
        if request.url.path in QUIET_PATHS:
            level = logging.DEBUG
        elif response.status_code >= 500:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            "%s %s %s %d %.2fms tenant=%s rid=%s",
            client_address(request),
            request.method,
            request.url.path,
            response.status_code,
            process_time_ms,
            tenant_id,
            request_id,
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time-Ms"] = f"{process_time_ms:.2f}"
        return response
