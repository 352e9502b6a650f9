"""Prometheus metrics middleware for the operator API."""

import time
from collections.abc import Callable, Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from cargohook.metrics.definitions import REQUEST_DURATION, REQUEST_TOTAL, REQUESTS_IN_PROGRESS

DEFAULT_EXCLUDED_PATHS = ("/metrics", "/api/v1/health", "/api/v1/ready")


def endpoint_label(request: Request) -> str:
    """Matched route pattern, e.g. ``/api/v1/deliveries/{delivery_id}``.

    Unmatched requests are grouped under a single label so random paths
    cannot create new series.
    """
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path if path is not None else "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts requests, in-progress requests and latency per route."""

    def __init__(self, app: ASGIApp, excluded_paths: Iterable[str] = DEFAULT_EXCLUDED_PATHS):
        super().__init__(app)
        self.excluded_paths = frozenset(excluded_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.excluded_paths:
            return await call_next(request)

        status_code = 500
        start_time = time.perf_counter()
        REQUESTS_IN_PROGRESS.labels(method=request.method).inc()
        try:
            response: Response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            REQUESTS_IN_PROGRESS.labels(method=request.method).dec()
            endpoint = endpoint_label(request)
            REQUEST_TOTAL.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=status_code,
            ).inc()
            REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(
                time.perf_counter() - start_time
            )
