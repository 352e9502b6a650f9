"""Webhook subscription and delivery Pydantic schemas."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cargohook.db.enums import WebhookEvent
from cargohook.webhook.executor import RESERVED_HEADERS
from cargohook.webhook.url_validator import validate_webhook_url


class SubscriberCreate(BaseModel):
    """Schema for creating a subscription.

    Rejects configuration errors (bad URL, empty or unknown events) before
    anything reaches the delivery engine.
    """

    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., description="Absolute http(s) endpoint receiving events")
    events: list[WebhookEvent] = Field(..., min_length=1)
    headers: dict[str, str] | None = Field(
        default=None,
        description="Static headers sent with every delivery",
    )
    is_active: bool = True

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        # Private-network policy depends on settings and is applied by the store
        validate_webhook_url(value, block_private=False)
        return value

    @field_validator("events")
    @classmethod
    def _check_events(cls, value: list[WebhookEvent]) -> list[WebhookEvent]:
        if WebhookEvent.TEST in value:
            raise ValueError("'test' is reserved for test deliveries and cannot be subscribed to")
        # Preserve order, drop duplicates
        return list(dict.fromkeys(value))

    @field_validator("headers")
    @classmethod
    def _check_headers(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        if not value:
            return None
        reserved = sorted(name for name in value if name.lower() in RESERVED_HEADERS)
        if reserved:
            raise ValueError(f"Reserved headers cannot be overridden: {', '.join(reserved)}")
        return value


class SubscriberResponse(BaseModel):
    """Subscription as shown to operators. Never includes the secret."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: str
    name: str
    url: str
    events: list[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class DeliveryStatsResponse(BaseModel):
    """Delivery counters for one subscription."""

    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    pending_deliveries: int
    success_rate: int = Field(description="Percentage of deliveries that succeeded")


class SubscriberDetailResponse(SubscriberResponse):
    """Subscription with delivery statistics."""

    stats: DeliveryStatsResponse


class DeliveryResponse(BaseModel):
    """Schema for a delivery record."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    webhook_id: uuid.UUID
    event: str
    payload_hash: str
    success: bool | None
    status_code: int | None
    error: str | None
    attempts: int
    delivered_at: datetime | None
    created_at: datetime
    updated_at: datetime


class DeliveryDetailResponse(DeliveryResponse):
    """Delivery record with payload snapshot and captured response."""

    payload: dict
    response: Any | None = None


class DeliveryListResponse(BaseModel):
    """Page of delivery records, newest first."""

    data: list[DeliveryResponse]
    total: int
    limit: int
    offset: int


class DeliveryOutcomeResponse(BaseModel):
    """Result of a manual retry or test delivery."""

    success: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None


class EventInfo(BaseModel):
    """Subscribable event."""

    value: str
    label: str
