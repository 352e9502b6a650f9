"""HTTP middleware."""

from cargohook.middleware.logging import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
