"""Tests for event fan-out, manual retry and test delivery."""

import asyncio
import json
import uuid

import httpx
import pytest
import respx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from cargohook.config import Settings
from cargohook.crypto import encrypt_headers
from cargohook.db.models import WebhookDelivery
from cargohook.webhook import store
from cargohook.webhook.dispatcher import WebhookDispatcher, create_http_client
from cargohook.webhook.errors import (
    AlreadyDelivered,
    DeliveryInProgress,
    DeliveryNotFound,
    SubscriberInactive,
    WebhookNotFound,
)
from cargohook.webhook.executor import (
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    WEBHOOK_ID_HEADER,
)
from cargohook.webhook.retry import RetryScheduler
from cargohook.webhook.signing import verify_signature

TENANT = "tenant-a"
URL = "https://hooks.example.com/cargo"
OTHER_URL = "https://crm.example.org/inbound"
ORDER = {"orderId": "ord_42", "reference": "PO-77"}


class HeldSleep:
    """Backoff that blocks until the test releases it."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.entered.set()
        await self.release.wait()


@pytest.fixture
def held_sleep() -> HeldSleep:
    return HeldSleep()


@pytest.fixture
def held_dispatcher(session_factory, http_client, test_settings, held_sleep):
    scheduler = RetryScheduler(http_client, sleep=held_sleep)
    return WebhookDispatcher(session_factory, http_client, test_settings, scheduler=scheduler)


async def _count_deliveries(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(WebhookDelivery.id)))).scalar_one()


class TestCreateHttpClient:
    """Tests for create_http_client."""

    @pytest.mark.asyncio
    async def test_uses_settings(self):
        settings = Settings(root_api_key="k", webhook_timeout=12.0)
        async with create_http_client(settings) as client:
            assert client.timeout.read == 12.0
            assert client.follow_redirects is False


class TestDispatch:
    """Tests for WebhookDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_invalid_payload_schedules_nothing(self, dispatcher):
        assert dispatcher.dispatch(TENANT, "order.created", {"status": "new"}) is None
        assert dispatcher.dispatch(TENANT, "order.teleported", {"orderId": "o"}) is None
        assert dispatcher.in_flight == 0

    def test_without_running_loop_schedules_nothing(self, test_settings):
        dispatcher = WebhookDispatcher(async_sessionmaker(), httpx.AsyncClient(), test_settings)

        assert dispatcher.dispatch(TENANT, "order.created", ORDER) is None
        assert dispatcher.in_flight == 0

    @pytest.mark.asyncio
    async def test_returns_task_without_waiting(self, dispatcher, make_webhook):
        await make_webhook()

        with respx.mock:
            respx.post(URL).mock(return_value=httpx.Response(200))
            task = dispatcher.dispatch(TENANT, "order.created", ORDER)

            assert isinstance(task, asyncio.Task)
            assert not task.done()
            assert dispatcher.in_flight == 1

            await dispatcher.drain()

        assert task.done()
        assert dispatcher.in_flight == 0

    @pytest.mark.asyncio
    async def test_no_subscribers_is_noop(self, dispatcher, session_factory):
        task = dispatcher.dispatch(TENANT, "order.created", ORDER)
        assert await task == []
        assert await _count_deliveries(session_factory) == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_inactive_and_unsubscribed_get_nothing(
        self, dispatcher, make_webhook, session_factory
    ):
        route = respx.post(URL).mock(return_value=httpx.Response(200))
        await make_webhook(is_active=False)
        await make_webhook(events=["invoice.paid"])
        await make_webhook(tenant_id="tenant-b")

        assert await dispatcher.dispatch(TENANT, "order.created", ORDER) == []
        assert route.call_count == 0
        assert await _count_deliveries(session_factory) == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_successful_delivery(self, dispatcher, make_webhook, fetch_delivery, fake_sleep):
        route = respx.post(URL).mock(return_value=httpx.Response(200, json={"received": True}))
        webhook = await make_webhook()

        delivery_ids = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        assert len(delivery_ids) == 1
        delivery = await fetch_delivery(delivery_ids[0])
        assert delivery.webhook_id == webhook.id
        assert delivery.success is True
        assert delivery.attempts == 1
        assert delivery.status_code == 200
        assert delivery.response == {"received": True}
        assert delivery.delivered_at is not None
        assert delivery.payload["data"] == ORDER
        assert fake_sleep.calls == []

        request = route.calls.last.request
        assert request.content == delivery.body.encode()
        assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], webhook.secret)
        assert request.headers[EVENT_HEADER] == "order.created"
        assert request.headers[WEBHOOK_ID_HEADER] == str(webhook.id)
        assert request.headers[DELIVERY_ID_HEADER] == str(delivery.id)

        body = json.loads(request.content)
        assert body["event"] == "order.created"
        assert body["data"] == ORDER
        assert body["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    @respx.mock
    async def test_unavailable_subscriber_exhausts(
        self, dispatcher, make_webhook, fetch_delivery, fake_sleep
    ):
        route = respx.post(URL).mock(return_value=httpx.Response(503))
        await make_webhook()

        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        delivery = await fetch_delivery(delivery_id)
        assert delivery.success is False
        assert delivery.attempts == 3
        assert delivery.status_code == 503
        assert delivery.error == "HTTP 503"
        assert delivery.delivered_at is None
        assert route.call_count == 3
        assert fake_sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    @respx.mock
    async def test_timeouts_exhaust(self, dispatcher, make_webhook, fetch_delivery, fake_sleep):
        respx.post(URL).mock(side_effect=httpx.ReadTimeout("slow"))
        await make_webhook()

        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        delivery = await fetch_delivery(delivery_id)
        assert delivery.success is False
        assert delivery.attempts == 3
        assert delivery.error == "timeout"
        assert delivery.status_code is None
        assert fake_sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    @respx.mock
    async def test_client_error_not_retried(
        self, dispatcher, make_webhook, fetch_delivery, fake_sleep
    ):
        route = respx.post(URL).mock(return_value=httpx.Response(404))
        await make_webhook()

        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        delivery = await fetch_delivery(delivery_id)
        assert delivery.success is False
        assert delivery.attempts == 1
        assert delivery.status_code == 404
        assert route.call_count == 1
        assert fake_sleep.calls == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_recovers_after_server_error(self, dispatcher, make_webhook, fetch_delivery):
        route = respx.post(URL).mock(side_effect=[httpx.Response(500), httpx.Response(200)])
        await make_webhook()

        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        delivery = await fetch_delivery(delivery_id)
        assert delivery.success is True
        assert delivery.attempts == 2
        assert delivery.delivered_at is not None
        first, second = (call.request for call in route.calls)
        assert first.content == second.content
        assert first.headers[SIGNATURE_HEADER] == second.headers[SIGNATURE_HEADER]

    @pytest.mark.asyncio
    @respx.mock
    async def test_subscribers_are_isolated(self, dispatcher, make_webhook, fetch_delivery):
        respx.post(URL).mock(side_effect=httpx.ConnectError("connection refused"))
        respx.post(OTHER_URL).mock(return_value=httpx.Response(202))
        failing = await make_webhook(url=URL)
        healthy = await make_webhook(url=OTHER_URL)

        delivery_ids = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        assert len(delivery_ids) == 2
        deliveries = {d.webhook_id: d for d in [await fetch_delivery(i) for i in delivery_ids]}
        assert deliveries[healthy.id].success is True
        assert deliveries[healthy.id].attempts == 1
        assert deliveries[failing.id].success is False
        assert deliveries[failing.id].attempts == 3
        assert deliveries[failing.id].error.startswith("Connection error")

    @pytest.mark.asyncio
    @respx.mock
    async def test_one_envelope_per_event(self, dispatcher, make_webhook, fetch_delivery):
        respx.post(URL).mock(return_value=httpx.Response(200))
        respx.post(OTHER_URL).mock(return_value=httpx.Response(200))
        await make_webhook(url=URL)
        await make_webhook(url=OTHER_URL)

        delivery_ids = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        bodies = {(await fetch_delivery(i)).body for i in delivery_ids}
        assert len(bodies) == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_encrypted_headers_sent_decrypted(
        self, session_factory, http_client, scheduler, make_webhook
    ):
        settings = Settings(root_api_key="k", encryption_key="header-key")
        dispatcher = WebhookDispatcher(session_factory, http_client, settings, scheduler=scheduler)
        route = respx.post(URL).mock(return_value=httpx.Response(200))
        await make_webhook(headers=encrypt_headers({"Authorization": "Bearer tok"}, "header-key"))

        await dispatcher.dispatch(TENANT, "order.created", ORDER)

        assert route.calls.last.request.headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_store_unavailable_does_not_propagate(
        self, http_client, test_settings, scheduler
    ):
        def unavailable():
            raise ConnectionError("database unavailable")

        dispatcher = WebhookDispatcher(unavailable, http_client, test_settings, scheduler=scheduler)

        task = dispatcher.dispatch(TENANT, "order.created", ORDER)

        assert await task == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_pipeline_failure_aborts_only_that_subscriber(
        self, dispatcher, make_webhook, fetch_delivery, monkeypatch
    ):
        respx.post(OTHER_URL).mock(return_value=httpx.Response(200))
        broken = await make_webhook(url=URL)
        await make_webhook(url=OTHER_URL)

        create_delivery = store.create_delivery

        async def flaky_create_delivery(session, webhook_id, envelope):
            if webhook_id == broken.id:
                raise RuntimeError("disk full")
            return await create_delivery(session, webhook_id, envelope)

        monkeypatch.setattr(store, "create_delivery", flaky_create_delivery)

        delivery_ids = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        assert len(delivery_ids) == 1
        assert (await fetch_delivery(delivery_ids[0])).success is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_aborted_pipeline_closes_record(
        self, dispatcher, make_webhook, fetch_delivery, monkeypatch
    ):
        respx.post(URL).mock(return_value=httpx.Response(200))
        await make_webhook()

        async def failing_record_result(*args, **kwargs):
            raise RuntimeError("lost connection")

        monkeypatch.setattr(store, "record_result", failing_record_result)

        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        delivery = await fetch_delivery(delivery_id)
        assert delivery.success is False
        assert delivery.attempts == 1
        assert "lost connection" in delivery.error


class TestRetryDelivery:
    """Tests for WebhookDispatcher.retry_delivery."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_delivery_retried_manually(
        self, dispatcher, make_webhook, fetch_delivery
    ):
        route = respx.post(URL).mock(return_value=httpx.Response(503))
        await make_webhook()
        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)
        original = await fetch_delivery(delivery_id)

        route.mock(return_value=httpx.Response(200))
        result = await dispatcher.retry_delivery(delivery_id, TENANT)

        assert result.success is True
        assert result.attempts == 1
        delivery = await fetch_delivery(delivery_id)
        assert delivery.success is True
        assert delivery.attempts == 4
        assert delivery.delivered_at is not None
        assert route.calls.last.request.content == original.body.encode()
        assert route.calls.last.request.headers[DELIVERY_ID_HEADER] == str(delivery_id)

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_again_adds_attempts(self, dispatcher, make_webhook, fetch_delivery):
        respx.post(URL).mock(return_value=httpx.Response(500))
        await make_webhook()
        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        result = await dispatcher.retry_delivery(delivery_id)

        assert result.success is False
        assert result.attempts == 3
        assert (await fetch_delivery(delivery_id)).attempts == 6

    @pytest.mark.asyncio
    @respx.mock
    async def test_already_delivered(self, dispatcher, make_webhook):
        route = respx.post(URL).mock(return_value=httpx.Response(200))
        await make_webhook()
        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)
        assert route.call_count == 1

        with pytest.raises(AlreadyDelivered):
            await dispatcher.retry_delivery(delivery_id, TENANT)

        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_not_found(self, dispatcher):
        with pytest.raises(DeliveryNotFound):
            await dispatcher.retry_delivery(uuid.uuid4())

    @pytest.mark.asyncio
    @respx.mock
    async def test_other_tenant_not_found(self, dispatcher, make_webhook):
        respx.post(URL).mock(return_value=httpx.Response(404))
        await make_webhook()
        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        with pytest.raises(DeliveryNotFound):
            await dispatcher.retry_delivery(delivery_id, "tenant-b")

    @pytest.mark.asyncio
    @respx.mock
    async def test_inactive_subscriber(self, dispatcher, make_webhook, session_factory):
        route = respx.post(URL).mock(return_value=httpx.Response(404))
        webhook = await make_webhook()
        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        async with session_factory() as session:
            stored = await store.get_subscriber(session, webhook.id)
            stored.is_active = False
            await session.commit()

        with pytest.raises(SubscriberInactive):
            await dispatcher.retry_delivery(delivery_id, TENANT)
        assert route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_pending_delivery_not_retried(
        self, held_dispatcher, held_sleep, make_webhook, fetch_delivery, session_factory
    ):
        route = respx.post(URL).mock(return_value=httpx.Response(503))
        await make_webhook()
        task = held_dispatcher.dispatch(TENANT, "order.created", ORDER)
        await asyncio.wait_for(held_sleep.entered.wait(), timeout=5)

        async with session_factory() as session:
            delivery_id = (await session.execute(select(WebhookDelivery.id))).scalar_one()
        pending = await fetch_delivery(delivery_id)
        assert pending.success is None
        assert pending.attempts == 1

        with pytest.raises(DeliveryInProgress):
            await held_dispatcher.retry_delivery(delivery_id, TENANT)
        assert route.call_count == 1

        held_sleep.release.set()
        assert await task == [delivery_id]

        delivery = await fetch_delivery(delivery_id)
        assert delivery.success is False
        assert delivery.attempts == 3
        assert route.call_count == 3

    @pytest.mark.asyncio
    @respx.mock
    async def test_concurrent_manual_retries(
        self, dispatcher, held_dispatcher, held_sleep, make_webhook, fetch_delivery
    ):
        route = respx.post(URL).mock(return_value=httpx.Response(503))
        await make_webhook()
        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        first = asyncio.create_task(held_dispatcher.retry_delivery(delivery_id, TENANT))
        await asyncio.wait_for(held_sleep.entered.wait(), timeout=5)
        assert (await fetch_delivery(delivery_id)).success is None

        with pytest.raises(DeliveryInProgress):
            await dispatcher.retry_delivery(delivery_id, TENANT)

        held_sleep.release.set()
        result = await first

        assert result.attempts == 3
        delivery = await fetch_delivery(delivery_id)
        assert delivery.success is False
        assert delivery.attempts == 6
        assert route.call_count == 6

    @pytest.mark.asyncio
    @respx.mock
    async def test_aborted_retry_closes_record(
        self, dispatcher, make_webhook, fetch_delivery, monkeypatch
    ):
        route = respx.post(URL).mock(return_value=httpx.Response(503))
        await make_webhook()
        (delivery_id,) = await dispatcher.dispatch(TENANT, "order.created", ORDER)

        async def failing_record_result(*args, **kwargs):
            raise RuntimeError("lost connection")

        monkeypatch.setattr(store, "record_result", failing_record_result)
        route.mock(return_value=httpx.Response(200))

        with pytest.raises(RuntimeError):
            await dispatcher.retry_delivery(delivery_id, TENANT)

        delivery = await fetch_delivery(delivery_id)
        assert delivery.success is False
        assert "lost connection" in delivery.error


class TestSendTest:
    """Tests for WebhookDispatcher.send_test."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_records_test_delivery(self, dispatcher, make_webhook, session_factory):
        route = respx.post(URL).mock(return_value=httpx.Response(200, text="pong"))
        webhook = await make_webhook(name="Dispatch board")

        result = await dispatcher.send_test(webhook.id, TENANT)

        assert result.success is True
        assert result.attempts == 1
        assert result.status_code == 200

        body = json.loads(route.calls.last.request.content)
        assert body["event"] == "test"
        assert body["data"]["webhookId"] == str(webhook.id)
        assert body["data"]["webhookName"] == "Dispatch board"
        assert body["data"]["message"]
        assert route.calls.last.request.headers[EVENT_HEADER] == "test"

        async with session_factory() as session:
            deliveries, total = await store.list_deliveries(session, webhook.id)
        assert total == 1
        assert deliveries[0].event == "test"
        assert deliveries[0].success is True
        assert deliveries[0].response == "pong"

    @pytest.mark.asyncio
    @respx.mock
    async def test_failure_reported(self, dispatcher, make_webhook):
        respx.post(URL).mock(return_value=httpx.Response(401))
        webhook = await make_webhook()

        result = await dispatcher.send_test(webhook.id)

        assert result.success is False
        assert result.status_code == 401
        assert result.error == "HTTP 401"

    @pytest.mark.asyncio
    @respx.mock
    async def test_inactive_subscriber_can_be_tested(self, dispatcher, make_webhook):
        respx.post(URL).mock(return_value=httpx.Response(204))
        webhook = await make_webhook(is_active=False)

        result = await dispatcher.send_test(webhook.id, TENANT)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_not_found(self, dispatcher, make_webhook):
        webhook = await make_webhook()

        with pytest.raises(WebhookNotFound):
            await dispatcher.send_test(uuid.uuid4())
        with pytest.raises(WebhookNotFound):
            await dispatcher.send_test(webhook.id, "tenant-b")
