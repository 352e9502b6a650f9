"""Errors raised by operator-initiated webhook operations."""


class WebhookError(Exception):
    """Base class for webhook delivery errors."""


class WebhookNotFound(WebhookError):
    """The subscriber does not exist (or belongs to another tenant)."""


class DeliveryNotFound(WebhookError):
    """The delivery record does not exist (or belongs to another tenant)."""


class AlreadyDelivered(WebhookError):
    """The delivery already succeeded and cannot be retried."""


class SubscriberInactive(WebhookError):
    """The owning subscriber has been deactivated."""


class DeliveryInProgress(WebhookError):
    """A delivery run already owns the record."""


class InvalidEventPayload(WebhookError, ValueError):
    """Event data does not match the schema of its event."""
