"""Pydantic schemas for the operator API."""

from cargohook.schemas.common import ErrorResponse, HealthResponse, ReadyResponse
from cargohook.schemas.webhook import (
    DeliveryDetailResponse,
    DeliveryListResponse,
    DeliveryOutcomeResponse,
    DeliveryResponse,
    DeliveryStatsResponse,
    EventInfo,
    SubscriberCreate,
    SubscriberDetailResponse,
    SubscriberResponse,
)

__all__ = [
    "DeliveryDetailResponse",
    "DeliveryListResponse",
    "DeliveryOutcomeResponse",
    "DeliveryResponse",
    "DeliveryStatsResponse",
    "ErrorResponse",
    "EventInfo",
    "HealthResponse",
    "ReadyResponse",
    "SubscriberCreate",
    "SubscriberDetailResponse",
    "SubscriberResponse",
]
