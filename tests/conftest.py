"""Pytest configuration and fixtures for cargohook tests."""

import os
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest

# Set required environment variables before any imports
os.environ.setdefault("CARGOHOOK_ROOT_API_KEY", "test_root_api_key_12345")
os.environ.setdefault("CARGOHOOK_DATABASE_URL", "sqlite+aiosqlite:///./cargohook-test.db")

import httpx
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cargohook.api.operations import get_dispatcher
from cargohook.config import Settings, clear_settings_cache, get_settings
from cargohook.db.models import Base, Webhook, WebhookDelivery
from cargohook.db.session import create_engine, get_session
from cargohook.main import create_app
from cargohook.webhook.dispatcher import WebhookDispatcher
from cargohook.webhook.retry import RetryScheduler

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
HOOK_URL = "https://hooks.example.com/cargo"


class FakeSleep:
    """Records backoff delays instead of waiting."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings with a throwaway SQLite database."""
    # Clear settings cache to ensure fresh settings
    clear_settings_cache()
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'cargohook.db'}",
        root_api_key="test_root_api_key_12345",
        api_host="127.0.0.1",
        api_port=18000,
        webhook_timeout=5.0,
    )


@pytest_asyncio.fixture
async def test_engine(test_settings: Settings):
    """Create test database engine with fresh tables."""
    engine = create_engine(test_settings)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest_asyncio.fixture
async def http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """Outbound client; requests are intercepted with respx in each test."""
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
def scheduler(http_client, test_settings, fake_sleep) -> RetryScheduler:
    return RetryScheduler(
        http_client,
        max_attempts=test_settings.webhook_max_attempts,
        initial_delay=test_settings.webhook_retry_initial_delay,
        timeout=test_settings.webhook_timeout,
        sleep=fake_sleep,
    )


@pytest_asyncio.fixture
async def dispatcher(
    session_factory, http_client, test_settings, scheduler
) -> AsyncGenerator[WebhookDispatcher, None]:
    dispatcher = WebhookDispatcher(session_factory, http_client, test_settings, scheduler=scheduler)
    yield dispatcher
    await dispatcher.drain()


@pytest.fixture
def make_webhook(session_factory) -> Callable[..., Awaitable[Webhook]]:
    """Factory inserting a subscription row."""

    async def _make(
        tenant_id: str = TENANT,
        url: str = HOOK_URL,
        events: list[str] | None = None,
        is_active: bool = True,
        headers: dict[str, str] | None = None,
        name: str = "Dispatch board",
    ) -> Webhook:
        webhook = Webhook(
            tenant_id=tenant_id,
            name=name,
            url=url,
            secret="a" * 64,
            events=events if events is not None else ["order.created"],
            headers=headers,
            is_active=is_active,
        )
        async with session_factory() as session:
            session.add(webhook)
            await session.commit()
        return webhook

    return _make


@pytest.fixture
def fetch_delivery(session_factory) -> Callable[[uuid.UUID], Awaitable[WebhookDelivery | None]]:
    """Load a delivery record in a fresh session."""

    async def _fetch(delivery_id: uuid.UUID) -> WebhookDelivery | None:
        async with session_factory() as session:
            return await session.get(WebhookDelivery, delivery_id)

    return _fetch


@pytest_asyncio.fixture
async def app(
    test_settings: Settings, session_factory, dispatcher
) -> AsyncGenerator[FastAPI, None]:
    """Create test FastAPI application."""
    application = create_app(test_settings)

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    application.dependency_overrides[get_session] = override_get_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_dispatcher] = lambda: dispatcher

    yield application

    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def auth_client(
    app: FastAPI,
    test_settings: Settings,
) -> AsyncGenerator[AsyncClient, None]:
    """Create authenticated test HTTP client scoped to TENANT."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={
            "X-API-Key": test_settings.root_api_key.get_secret_value(),
            "X-Tenant-Id": TENANT,
        },
    ) as ac:
        yield ac
