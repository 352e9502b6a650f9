"""cargohook application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from cargohook import __version__
from cargohook.api.router import api_router
from cargohook.config import Settings, get_settings
from cargohook.db.session import close_engine, get_async_session_factory
from cargohook.metrics import MetricsMiddleware
from cargohook.middleware import RequestLoggingMiddleware
from cargohook.webhook.dispatcher import WebhookDispatcher, create_http_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Creates the shared HTTP client and the dispatcher on startup; on
    shutdown waits for in-flight deliveries before closing the client.
    """
    settings: Settings = app.state.settings
    client = create_http_client(settings)
    app.state.dispatcher = WebhookDispatcher(get_async_session_factory(), client, settings)
    logger.info("Webhook dispatcher started")

    yield

    dispatcher: WebhookDispatcher = app.state.dispatcher
    if dispatcher.in_flight:
        logger.info(f"Waiting for {dispatcher.in_flight} in-flight webhook dispatches")
    await dispatcher.drain()
    await client.aclose()
    app.state.dispatcher = None
    await close_engine()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Optional settings override for testing. If not provided,
                  default settings will be loaded from environment.
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="cargohook",
        description="Outbound webhook delivery engine",
        version=__version__,
        lifespan=lifespan,
    )

    # Store settings on app state for access in routes
    app.state.settings = settings
    app.state.dispatcher = None

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(api_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Expose Prometheus metrics."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    return app
