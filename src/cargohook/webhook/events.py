"""Event catalogue, per-event payload schemas and the frozen wire envelope."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cargohook.db.enums import WebhookEvent
from cargohook.webhook.errors import InvalidEventPayload

TEST_MESSAGE = "This is a test webhook from cargohook"


class EventData(BaseModel):
    """Base payload schema.

    Identifiers are required per event; any additional keys supplied by the
    producer are passed through unchanged.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)


class OrderEventData(EventData):
    order_id: str = Field(alias="orderId", min_length=1)


class OrderStatusChangedData(OrderEventData):
    status: str = Field(min_length=1)
    previous_status: str | None = Field(default=None, alias="previousStatus")


class OrderAssignmentEventData(OrderEventData):
    assignment_id: str = Field(alias="assignmentId", min_length=1)


class InvoiceEventData(EventData):
    invoice_id: str = Field(alias="invoiceId", min_length=1)


class VehicleEventData(EventData):
    vehicle_id: str = Field(alias="vehicleId", min_length=1)


class DriverEventData(EventData):
    driver_id: str = Field(alias="driverId", min_length=1)


class DiagnosticEventData(EventData):
    message: str = TEST_MESSAGE
    webhook_id: str = Field(alias="webhookId")
    webhook_name: str = Field(alias="webhookName")


EVENT_PAYLOAD_SCHEMAS: dict[WebhookEvent, type[EventData]] = {
    WebhookEvent.ORDER_CREATED: OrderEventData,
    WebhookEvent.ORDER_UPDATED: OrderEventData,
    WebhookEvent.ORDER_STATUS_CHANGED: OrderStatusChangedData,
    WebhookEvent.ORDER_ASSIGNMENT_CREATED: OrderAssignmentEventData,
    WebhookEvent.ORDER_ASSIGNMENT_UPDATED: OrderAssignmentEventData,
    WebhookEvent.ORDER_ASSIGNMENT_DELETED: OrderAssignmentEventData,
    WebhookEvent.INVOICE_CREATED: InvoiceEventData,
    WebhookEvent.INVOICE_PAID: InvoiceEventData,
    WebhookEvent.VEHICLE_UPDATED: VehicleEventData,
    WebhookEvent.DRIVER_UPDATED: DriverEventData,
    WebhookEvent.TEST: DiagnosticEventData,
}

# Human-readable labels for the operator surface
EVENT_LABELS: dict[WebhookEvent, str] = {
    WebhookEvent.ORDER_CREATED: "Order created",
    WebhookEvent.ORDER_UPDATED: "Order updated",
    WebhookEvent.ORDER_STATUS_CHANGED: "Order status changed",
    WebhookEvent.ORDER_ASSIGNMENT_CREATED: "Assignment created",
    WebhookEvent.ORDER_ASSIGNMENT_UPDATED: "Assignment updated",
    WebhookEvent.ORDER_ASSIGNMENT_DELETED: "Assignment deleted",
    WebhookEvent.INVOICE_CREATED: "Invoice created",
    WebhookEvent.INVOICE_PAID: "Invoice paid",
    WebhookEvent.VEHICLE_UPDATED: "Vehicle updated",
    WebhookEvent.DRIVER_UPDATED: "Driver updated",
}


def parse_event(event: WebhookEvent | str) -> WebhookEvent:
    """Resolve an event name to its enum member.

    Raises:
        InvalidEventPayload: If the name is not part of the catalogue.
    """
    try:
        return WebhookEvent(event)
    except ValueError as e:
        raise InvalidEventPayload(f"Unknown event: {event}") from e


def validate_event_data(event: WebhookEvent | str, data: dict[str, Any]) -> dict[str, Any]:
    """Validate ``data`` against the schema of ``event``.

    Returns:
        The payload as a JSON-compatible dict using wire (camelCase) keys.

    Raises:
        InvalidEventPayload: If the event is unknown or the data does not match.
    """
    event = parse_event(event)
    schema = EVENT_PAYLOAD_SCHEMAS[event]
    try:
        model = schema.model_validate(data)
    except ValidationError as e:
        raise InvalidEventPayload(f"Invalid payload for {event.value}: {e}") from e
    return model.model_dump(mode="json", by_alias=True, exclude_unset=True)


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class WebhookEnvelope(BaseModel):
    """The object transmitted to subscribers.

    Frozen once built; :meth:`to_body` is serialized a single time per
    delivery and stored, so every attempt sends identical bytes.
    """

    model_config = ConfigDict(frozen=True)

    event: str
    timestamp: str
    data: dict[str, Any]

    @classmethod
    def build(
        cls,
        event: WebhookEvent | str,
        data: dict[str, Any],
        now: datetime | None = None,
    ) -> "WebhookEnvelope":
        """Validate ``data`` and wrap it in an envelope stamped with ``now``."""
        event = parse_event(event)
        return cls(
            event=event.value,
            timestamp=format_timestamp(now or datetime.now(UTC)),
            data=validate_event_data(event, data),
        )

    @classmethod
    def for_test(cls, webhook_id: str, webhook_name: str) -> "WebhookEnvelope":
        """Create the diagnostic envelope sent by a test delivery."""
        return cls.build(
            WebhookEvent.TEST,
            {"message": TEST_MESSAGE, "webhookId": webhook_id, "webhookName": webhook_name},
        )

    def to_body(self) -> str:
        """Compact JSON body."""
        return self.model_dump_json()
