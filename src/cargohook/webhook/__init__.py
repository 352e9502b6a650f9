"""Outbound webhook delivery engine."""

from cargohook.webhook.dispatcher import WebhookDispatcher, create_http_client
from cargohook.webhook.errors import (
    AlreadyDelivered,
    DeliveryInProgress,
    DeliveryNotFound,
    InvalidEventPayload,
    SubscriberInactive,
    WebhookError,
    WebhookNotFound,
)
from cargohook.webhook.events import WebhookEnvelope, validate_event_data
from cargohook.webhook.retry import DeliveryResult, RetryScheduler
from cargohook.webhook.signing import generate_webhook_secret, sign_payload, verify_signature
from cargohook.webhook.url_validator import SSRFError, validate_webhook_url

__all__ = [
    "AlreadyDelivered",
    "DeliveryInProgress",
    "DeliveryNotFound",
    "DeliveryResult",
    "InvalidEventPayload",
    "RetryScheduler",
    "SSRFError",
    "SubscriberInactive",
    "WebhookDispatcher",
    "WebhookEnvelope",
    "WebhookError",
    "WebhookNotFound",
    "create_http_client",
    "generate_webhook_secret",
    "sign_payload",
    "validate_event_data",
    "validate_webhook_url",
    "verify_signature",
]
