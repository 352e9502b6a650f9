"""Event fan-out to subscribers, manual retry and test delivery."""

import asyncio
import logging
import uuid
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cargohook.config import Settings, get_settings
from cargohook.db.enums import WebhookEvent
from cargohook.db.models import Webhook
from cargohook.metrics.definitions import (
    WEBHOOK_DELIVERIES_TOTAL,
    WEBHOOK_DISPATCH_ERRORS_TOTAL,
    WEBHOOK_PIPELINES_IN_FLIGHT,
)
from cargohook.webhook import store
from cargohook.webhook.errors import (
    AlreadyDelivered,
    DeliveryInProgress,
    DeliveryNotFound,
    InvalidEventPayload,
    SubscriberInactive,
    WebhookNotFound,
)
from cargohook.webhook.events import WebhookEnvelope
from cargohook.webhook.executor import AttemptOutcome, WebhookTarget
from cargohook.webhook.retry import DeliveryResult, RetryScheduler

logger = logging.getLogger(__name__)


def create_http_client(settings: Settings | None = None) -> httpx.AsyncClient:
    """Create the HTTP client shared by all deliveries of a process."""
    settings = settings or get_settings()
    return httpx.AsyncClient(
        timeout=settings.webhook_timeout,
        limits=httpx.Limits(
            max_connections=settings.http_max_connections,
            max_keepalive_connections=settings.http_max_keepalive_connections,
        ),
        follow_redirects=False,
    )


class WebhookDispatcher:
    """Delivers business events to every interested subscriber.

    Each subscriber gets its own pipeline (record, retry loop, final state)
    running as an independent task, so a slow or failing subscriber never
    delays the others or the code that emitted the event.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: httpx.AsyncClient,
        settings: Settings | None = None,
        scheduler: RetryScheduler | None = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.settings = settings or get_settings()
        self.scheduler = scheduler or RetryScheduler.from_settings(client, self.settings)
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        """Number of dispatch tasks not yet finished."""
        return len(self._tasks)

    def dispatch(
        self,
        tenant_id: str,
        event: WebhookEvent | str,
        data: dict[str, Any],
    ) -> asyncio.Task | None:
        """Schedule delivery of ``event`` to the tenant's subscribers.

        Returns immediately and never raises.

        Returns:
            The background task (its result is the list of delivery ids),
            or None if nothing was scheduled (invalid payload, or no running
            event loop).
        """
        try:
            envelope = WebhookEnvelope.build(event, data)
        except InvalidEventPayload as e:
            WEBHOOK_DISPATCH_ERRORS_TOTAL.inc()
            logger.error(f"Not dispatching {event} for tenant {tenant_id}: {e}")
            return None

        fan_out = self._fan_out(tenant_id, envelope)
        try:
            task = asyncio.create_task(fan_out, name=f"webhook-dispatch-{envelope.event}")
        except RuntimeError as e:
            fan_out.close()
            WEBHOOK_DISPATCH_ERRORS_TOTAL.inc()
            logger.error(f"Not dispatching {envelope.event} for tenant {tenant_id}: {e}")
            return None
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for all in-flight dispatch tasks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _fan_out(self, tenant_id: str, envelope: WebhookEnvelope) -> list[uuid.UUID]:
        try:
            async with self.session_factory() as session:
                webhooks = await store.get_subscribers_for_event(session, tenant_id, envelope.event)
                targets = [
                    WebhookTarget.from_model(webhook, self.settings.encryption_key)
                    for webhook in webhooks
                ]
        except Exception:
            WEBHOOK_DISPATCH_ERRORS_TOTAL.inc()
            logger.exception(f"Failed to load subscribers for {envelope.event} ({tenant_id})")
            return []

        if not targets:
            logger.debug(f"No webhooks subscribed to {envelope.event} for tenant {tenant_id}")
            return []

        results = await asyncio.gather(
            *(self._deliver(target, envelope) for target in targets),
            return_exceptions=True,
        )

        delivery_ids = []
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"Webhook pipeline failed: {result!r}")
            elif result is not None:
                delivery_ids.append(result)
        return delivery_ids

    async def _deliver(self, target: WebhookTarget, envelope: WebhookEnvelope) -> uuid.UUID | None:
        """Run one subscriber pipeline. Never raises."""
        WEBHOOK_PIPELINES_IN_FLIGHT.inc()
        delivery_id: uuid.UUID | None = None
        try:
            async with self.session_factory() as session:
                delivery = await store.create_delivery(session, uuid.UUID(target.id), envelope)
                await session.commit()
                delivery_id = delivery.id
                body = delivery.body

            await self._run(target, delivery_id, body, envelope.event)
            return delivery_id
        except Exception as e:
            WEBHOOK_DISPATCH_ERRORS_TOTAL.inc()
            logger.exception(f"Webhook pipeline for {target.url} aborted")
            if delivery_id is not None:
                await self._close_aborted(delivery_id, e)
            return delivery_id
        finally:
            WEBHOOK_PIPELINES_IN_FLIGHT.dec()

    async def _close_aborted(self, delivery_id: uuid.UUID, error: Exception) -> None:
        try:
            async with self.session_factory() as session:
                await store.mark_failed(session, delivery_id, f"Internal error: {error}")
                await session.commit()
        except Exception:
            logger.exception(f"Could not mark delivery {delivery_id} as failed")

    async def _run(
        self,
        target: WebhookTarget,
        delivery_id: uuid.UUID,
        body: str,
        event: str,
        previous_attempts: int = 0,
    ) -> DeliveryResult:
        """Run the scheduler for an existing record and persist every step."""

        async def on_attempt(attempt: int, outcome: AttemptOutcome) -> None:
            async with self.session_factory() as session:
                total = previous_attempts + attempt
                await store.record_attempt(session, delivery_id, total, outcome)
                await session.commit()

        result = await self.scheduler.execute(
            target,
            body,
            event,
            delivery_id=str(delivery_id),
            on_attempt=on_attempt,
        )

        async with self.session_factory() as session:
            await store.record_result(session, delivery_id, result, previous_attempts)
            await session.commit()

        WEBHOOK_DELIVERIES_TOTAL.labels(status=result.final_status).inc()
        return result

    async def retry_delivery(
        self,
        delivery_id: uuid.UUID,
        tenant_id: str | None = None,
    ) -> DeliveryResult:
        """Re-run the retry loop for a failed delivery.

        The stored body is resent unchanged and the new attempts are added to
        the stored count. The record is pending while the retry runs.

        Raises:
            DeliveryNotFound: If the record does not exist for this tenant.
            AlreadyDelivered: If the record already succeeded.
            DeliveryInProgress: If another run still owns the record.
            SubscriberInactive: If the subscription has been deactivated.
        """
        async with self.session_factory() as session:
            delivery = await store.get_delivery(session, delivery_id, tenant_id)
            if delivery is None:
                raise DeliveryNotFound(f"Delivery {delivery_id} not found")
            if delivery.success is True:
                raise AlreadyDelivered(f"Delivery {delivery_id} already succeeded")
            if delivery.success is None:
                raise DeliveryInProgress(f"Delivery {delivery_id} is still being delivered")
            if not delivery.webhook.is_active:
                raise SubscriberInactive(f"Webhook {delivery.webhook_id} is inactive")

            target = WebhookTarget.from_model(delivery.webhook, self.settings.encryption_key)
            body = delivery.body
            event = delivery.event
            previous_attempts = delivery.attempts

            if not await store.claim_for_retry(session, delivery_id):
                raise DeliveryInProgress(f"Delivery {delivery_id} was claimed by another run")
            await session.commit()

        logger.info(f"Manual retry of delivery {delivery_id} after {previous_attempts} attempts")
        try:
            return await self._run(target, delivery_id, body, event, previous_attempts)
        except Exception as e:
            logger.exception(f"Manual retry of delivery {delivery_id} aborted")
            await self._close_aborted(delivery_id, e)
            raise

    async def send_test(
        self,
        webhook_id: uuid.UUID,
        tenant_id: str | None = None,
    ) -> DeliveryResult:
        """Send a ``test`` event to a subscription and record it.

        Raises:
            WebhookNotFound: If the subscription does not exist for this tenant.
        """
        async with self.session_factory() as session:
            webhook: Webhook | None = await store.get_subscriber(session, webhook_id, tenant_id)
            if webhook is None:
                raise WebhookNotFound(f"Webhook {webhook_id} not found")

            envelope = WebhookEnvelope.for_test(str(webhook.id), webhook.name)
            target = WebhookTarget.from_model(webhook, self.settings.encryption_key)
            delivery = await store.create_delivery(session, webhook.id, envelope)
            await session.commit()
            delivery_id = delivery.id
            body = delivery.body

        logger.info(f"Sending test webhook to {target.url} (delivery {delivery_id})")
        return await self._run(target, delivery_id, body, envelope.event)
