"""Database enum types for consistent event values."""

from enum import Enum


class WebhookEvent(str, Enum):
    """Events a subscriber can receive.

    The set is closed; adding a member is a schema change for subscribers
    and needs a payload schema in ``cargohook.webhook.events``.
    """

    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_STATUS_CHANGED = "order.status_changed"
    ORDER_ASSIGNMENT_CREATED = "order.assignment_created"
    ORDER_ASSIGNMENT_UPDATED = "order.assignment_updated"
    ORDER_ASSIGNMENT_DELETED = "order.assignment_deleted"
    INVOICE_CREATED = "invoice.created"
    INVOICE_PAID = "invoice.paid"
    VEHICLE_UPDATED = "vehicle.updated"
    DRIVER_UPDATED = "driver.updated"

    # Connectivity check only, never subscribable
    TEST = "test"


SUBSCRIBABLE_EVENTS: tuple[WebhookEvent, ...] = tuple(
    event for event in WebhookEvent if event is not WebhookEvent.TEST
)
