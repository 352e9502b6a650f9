"""Database module."""

from cargohook.db.enums import SUBSCRIBABLE_EVENTS, WebhookEvent
from cargohook.db.models import Base, Webhook, WebhookDelivery
from cargohook.db.session import get_async_session_factory, get_session

__all__ = [
    "SUBSCRIBABLE_EVENTS",
    "Base",
    "Webhook",
    "WebhookDelivery",
    "WebhookEvent",
    "get_async_session_factory",
    "get_session",
]
