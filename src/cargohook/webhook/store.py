"""Database access for subscriptions and delivery records."""

import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import partial
from typing import TYPE_CHECKING

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cargohook.config import Settings, get_settings
from cargohook.crypto import encrypt_headers
from cargohook.db.models import Webhook, WebhookDelivery
from cargohook.webhook.events import WebhookEnvelope
from cargohook.webhook.executor import AttemptOutcome
from cargohook.webhook.retry import DeliveryResult
from cargohook.webhook.signing import generate_webhook_secret
from cargohook.webhook.url_validator import validate_webhook_url

if TYPE_CHECKING:
    from cargohook.schemas.webhook import SubscriberCreate

logger = logging.getLogger(__name__)


def compute_payload_hash(body: str | bytes) -> str:
    """Compute the sha256 of the transmitted body."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hashlib.sha256(body).hexdigest()


@dataclass(frozen=True)
class DeliveryStats:
    """Delivery counters for one subscription."""

    total: int
    successful: int
    failed: int
    pending: int

    @property
    def success_rate(self) -> int:
        """Rounded percentage of successful deliveries, 0 when there are none."""
        if self.total == 0:
            return 0
        return round(self.successful * 100 / self.total)


# Subscriptions


async def create_subscriber(
    session: AsyncSession,
    tenant_id: str,
    data: "SubscriberCreate",
    settings: Settings | None = None,
) -> Webhook:
    """Create a subscription with a freshly generated secret.

    Raises:
        SSRFError: If private networks are blocked and the URL targets one,
            directly or through its DNS records.
    """
    settings = settings or get_settings()
    if settings.webhook_block_private_networks:
        # Resolution blocks, keep it off the event loop
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, partial(validate_webhook_url, data.url, block_private=True, resolve_dns=True)
        )

    webhook = Webhook(
        tenant_id=tenant_id,
        name=data.name,
        url=data.url,
        secret=generate_webhook_secret(),
        events=[event.value for event in data.events],
        headers=encrypt_headers(data.headers, settings.encryption_key),
        is_active=data.is_active,
    )
    session.add(webhook)
    await session.flush()
    await session.refresh(webhook)

    logger.info(f"Created webhook {webhook.id} for tenant {tenant_id}")
    return webhook


async def get_subscriber(
    session: AsyncSession,
    webhook_id: uuid.UUID,
    tenant_id: str | None = None,
) -> Webhook | None:
    """Get a subscription, optionally scoped to a tenant."""
    stmt = select(Webhook).where(Webhook.id == webhook_id)
    if tenant_id is not None:
        stmt = stmt.where(Webhook.tenant_id == tenant_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_subscribers_for_event(
    session: AsyncSession,
    tenant_id: str,
    event: str,
) -> list[Webhook]:
    """Get the tenant's active subscriptions that include ``event``.

    Event membership is checked in Python so the same query works on the
    JSONB column in PostgreSQL and the JSON column in SQLite.
    """
    stmt = (
        select(Webhook)
        .where(Webhook.tenant_id == tenant_id, Webhook.is_active.is_(True))
        .order_by(Webhook.created_at)
    )
    result = await session.execute(stmt)
    return [webhook for webhook in result.scalars().all() if webhook.subscribes_to(event)]


async def delete_subscriber(
    session: AsyncSession,
    webhook_id: uuid.UUID,
    tenant_id: str | None = None,
) -> bool:
    """Delete a subscription together with its delivery records.

    Returns:
        False if the subscription does not exist.
    """
    webhook = await get_subscriber(session, webhook_id, tenant_id)
    if webhook is None:
        return False

    result = await session.execute(
        delete(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook_id)
    )
    await session.delete(webhook)
    await session.flush()

    logger.info(f"Deleted webhook {webhook_id} and {result.rowcount} delivery records")
    return True


# Delivery records


async def create_delivery(
    session: AsyncSession,
    webhook_id: uuid.UUID,
    envelope: WebhookEnvelope,
) -> WebhookDelivery:
    """Create a pending delivery record for ``envelope``.

    The serialized body is stored so every later attempt sends the same bytes.
    """
    body = envelope.to_body()
    delivery = WebhookDelivery(
        webhook_id=webhook_id,
        event=envelope.event,
        payload=envelope.model_dump(mode="json"),
        body=body,
        payload_hash=compute_payload_hash(body),
        success=None,
        attempts=0,
    )
    session.add(delivery)
    await session.flush()
    await session.refresh(delivery)

    logger.debug(f"Created delivery {delivery.id} ({envelope.event}) for webhook {webhook_id}")
    return delivery


async def record_attempt(
    session: AsyncSession,
    delivery_id: uuid.UUID,
    attempts: int,
    outcome: AttemptOutcome,
) -> None:
    """Store the progress of a delivery after one attempt.

    ``attempts`` is the cumulative count. The record stays pending until
    :func:`record_result` stores the final state.
    """
    stmt = (
        update(WebhookDelivery)
        .where(WebhookDelivery.id == delivery_id)
        .values(
            attempts=attempts,
            status_code=outcome.status_code,
            response=outcome.response,
            error=outcome.error,
            updated_at=datetime.now(UTC),  # Explicit update since onupdate doesn't trigger
        )
    )
    await session.execute(stmt)
    await session.flush()


async def record_result(
    session: AsyncSession,
    delivery_id: uuid.UUID,
    result: DeliveryResult,
    previous_attempts: int = 0,
) -> None:
    """Store the terminal state of a delivery run.

    Args:
        session: Database session
        delivery_id: Delivery record ID
        result: Outcome of the scheduler run
        previous_attempts: Attempts stored before this run (manual retries)
    """
    now = datetime.now(UTC)
    stmt = (
        update(WebhookDelivery)
        .where(WebhookDelivery.id == delivery_id)
        .values(
            success=result.success,
            attempts=previous_attempts + result.attempts,
            status_code=result.status_code,
            response=result.response,
            error=result.error,
            delivered_at=now if result.success else None,
            updated_at=now,
        )
    )
    await session.execute(stmt)
    await session.flush()

    if result.success:
        logger.info(f"Delivery {delivery_id} marked as delivered")
    else:
        logger.warning(f"Delivery {delivery_id} failed: {result.error}")


async def mark_failed(
    session: AsyncSession,
    delivery_id: uuid.UUID,
    error: str,
) -> None:
    """Close a delivery whose pipeline aborted before a result was produced."""
    stmt = (
        update(WebhookDelivery)
        .where(WebhookDelivery.id == delivery_id, WebhookDelivery.success.is_(None))
        .values(success=False, error=error, updated_at=datetime.now(UTC))
    )
    await session.execute(stmt)
    await session.flush()


async def claim_for_retry(session: AsyncSession, delivery_id: uuid.UUID) -> bool:
    """Move a failed delivery back to pending so a manual retry owns it.

    Returns:
        False if the record is no longer failed (another run claimed it or it
        was delivered in the meantime).
    """
    stmt = (
        update(WebhookDelivery)
        .where(WebhookDelivery.id == delivery_id, WebhookDelivery.success.is_(False))
        .values(success=None, updated_at=datetime.now(UTC))
    )
    result = await session.execute(stmt)
    await session.flush()
    return result.rowcount == 1


async def get_delivery(
    session: AsyncSession,
    delivery_id: uuid.UUID,
    tenant_id: str | None = None,
) -> WebhookDelivery | None:
    """Get a delivery record with its subscription loaded.

    With ``tenant_id`` set, records owned by other tenants are not returned.
    """
    stmt = (
        select(WebhookDelivery)
        .options(selectinload(WebhookDelivery.webhook))
        .where(WebhookDelivery.id == delivery_id)
    )
    if tenant_id is not None:
        stmt = stmt.join(WebhookDelivery.webhook).where(Webhook.tenant_id == tenant_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_deliveries(
    session: AsyncSession,
    webhook_id: uuid.UUID,
    success: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[WebhookDelivery], int]:
    """List deliveries of a subscription, newest first.

    Returns:
        Tuple of (page of records, total matching records)
    """
    conditions = [WebhookDelivery.webhook_id == webhook_id]
    if success is not None:
        conditions.append(WebhookDelivery.success.is_(success))

    count_stmt = select(func.count()).select_from(WebhookDelivery).where(*conditions)
    total = (await session.execute(count_stmt)).scalar_one()

    stmt = (
        select(WebhookDelivery)
        .where(*conditions)
        .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id)
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), total


async def get_delivery_stats(session: AsyncSession, webhook_id: uuid.UUID) -> DeliveryStats:
    """Count deliveries of a subscription by state."""
    stmt = select(
        func.count(WebhookDelivery.id),
        func.sum(case((WebhookDelivery.success.is_(True), 1), else_=0)),
        func.sum(case((WebhookDelivery.success.is_(False), 1), else_=0)),
    ).where(WebhookDelivery.webhook_id == webhook_id)
    total, successful, failed = (await session.execute(stmt)).one()
    total = total or 0
    successful = successful or 0
    failed = failed or 0
    return DeliveryStats(
        total=total,
        successful=successful,
        failed=failed,
        pending=total - successful - failed,
    )
