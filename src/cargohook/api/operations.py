"""Operations API endpoints (health, ready, delivery log, retry, test webhook)."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from cargohook import __version__
from cargohook.auth import Operator
from cargohook.db.enums import SUBSCRIBABLE_EVENTS
from cargohook.db.models import Webhook
from cargohook.db.session import get_session
from cargohook.schemas import (
    DeliveryDetailResponse,
    DeliveryListResponse,
    DeliveryOutcomeResponse,
    DeliveryResponse,
    DeliveryStatsResponse,
    ErrorResponse,
    EventInfo,
    HealthResponse,
    ReadyResponse,
    SubscriberDetailResponse,
    SubscriberResponse,
)
from cargohook.webhook import store
from cargohook.webhook.dispatcher import WebhookDispatcher
from cargohook.webhook.errors import (
    AlreadyDelivered,
    DeliveryInProgress,
    DeliveryNotFound,
    SubscriberInactive,
    WebhookNotFound,
)
from cargohook.webhook.events import EVENT_LABELS
from cargohook.webhook.retry import DeliveryResult

router = APIRouter(tags=["operations"])

NOT_FOUND = {404: {"model": ErrorResponse}}


def get_dispatcher(request: Request) -> WebhookDispatcher:
    """Dependency returning the dispatcher created at application startup."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook dispatcher not running",
        )
    return dispatcher


def _outcome(result: DeliveryResult) -> DeliveryOutcomeResponse:
    return DeliveryOutcomeResponse(
        success=result.success,
        attempts=result.attempts,
        status_code=result.status_code,
        error=result.error,
    )


async def _get_webhook_or_404(
    session: AsyncSession,
    webhook_id: uuid.UUID,
    tenant_id: str,
) -> Webhook:
    webhook = await store.get_subscriber(session, webhook_id, tenant_id)
    if not webhook:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found",
        )
    return webhook


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint - returns server status."""
    return HealthResponse(status="ok", version=__version__)


@router.get("/ready", response_model=ReadyResponse)
async def ready_check(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadyResponse:
    """Readiness check endpoint - verifies database connectivity."""
    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not ready",
        ) from e

    dispatcher = getattr(request.app.state, "dispatcher", None)
    return ReadyResponse(
        status="ok",
        database="ok",
        pipelines_in_flight=dispatcher.in_flight if dispatcher else 0,
    )


@router.get("/events", response_model=list[EventInfo])
async def list_events(operator: Operator) -> list[EventInfo]:
    """List the events a webhook can subscribe to."""
    return [
        EventInfo(value=event.value, label=EVENT_LABELS[event]) for event in SUBSCRIBABLE_EVENTS
    ]


# Webhook endpoints


@router.get(
    "/webhooks/{webhook_id}",
    response_model=SubscriberDetailResponse,
    responses=NOT_FOUND,
)
async def get_webhook(
    webhook_id: uuid.UUID,
    operator: Operator,
    session: AsyncSession = Depends(get_session),
) -> SubscriberDetailResponse:
    """Get a webhook with its delivery statistics. The secret is never returned."""
    webhook = await _get_webhook_or_404(session, webhook_id, operator.tenant_id)
    stats = await store.get_delivery_stats(session, webhook.id)

    base = SubscriberResponse.model_validate(webhook)
    return SubscriberDetailResponse(
        **base.model_dump(),
        stats=DeliveryStatsResponse(
            total_deliveries=stats.total,
            successful_deliveries=stats.successful,
            failed_deliveries=stats.failed,
            pending_deliveries=stats.pending,
            success_rate=stats.success_rate,
        ),
    )


@router.get(
    "/webhooks/{webhook_id}/deliveries",
    response_model=DeliveryListResponse,
    responses=NOT_FOUND,
)
async def list_webhook_deliveries(
    webhook_id: uuid.UUID,
    operator: Operator,
    session: AsyncSession = Depends(get_session),
    success: bool | None = Query(None, description="Filter by delivery outcome"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> DeliveryListResponse:
    """List deliveries for a webhook, newest first."""
    webhook = await _get_webhook_or_404(session, webhook_id, operator.tenant_id)
    deliveries, total = await store.list_deliveries(
        session,
        webhook.id,
        success=success,
        limit=limit,
        offset=offset,
    )
    return DeliveryListResponse(
        data=[DeliveryResponse.model_validate(delivery) for delivery in deliveries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/webhooks/{webhook_id}/test",
    response_model=DeliveryOutcomeResponse,
    responses=NOT_FOUND,
)
async def test_webhook(
    webhook_id: uuid.UUID,
    operator: Operator,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> DeliveryOutcomeResponse:
    """Send a test event to a webhook and report the outcome."""
    try:
        result = await dispatcher.send_test(webhook_id, operator.tenant_id)
    except WebhookNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found",
        ) from e
    return _outcome(result)


# Delivery endpoints


@router.get(
    "/deliveries/{delivery_id}",
    response_model=DeliveryDetailResponse,
    responses=NOT_FOUND,
)
async def get_delivery(
    delivery_id: uuid.UUID,
    operator: Operator,
    session: AsyncSession = Depends(get_session),
) -> DeliveryDetailResponse:
    """Get a delivery with its full payload."""
    delivery = await store.get_delivery(session, delivery_id, operator.tenant_id)
    if not delivery:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Delivery not found",
        )
    return DeliveryDetailResponse.model_validate(delivery)


@router.post(
    "/deliveries/{delivery_id}/retry",
    response_model=DeliveryOutcomeResponse,
    responses={**NOT_FOUND, 409: {"model": ErrorResponse}},
)
async def retry_delivery(
    delivery_id: uuid.UUID,
    operator: Operator,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> DeliveryOutcomeResponse:
    """Retry a failed delivery immediately and report the outcome."""
    try:
        result = await dispatcher.retry_delivery(delivery_id, operator.tenant_id)
    except DeliveryNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Delivery not found",
        ) from e
    except AlreadyDelivered as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Delivery already succeeded",
        ) from e
    except DeliveryInProgress as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Delivery is in progress",
        ) from e
    except SubscriberInactive as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Webhook is inactive",
        ) from e
    return _outcome(result)
