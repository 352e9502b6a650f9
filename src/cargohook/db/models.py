"""SQLAlchemy database models."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    # Use JSON with JSONB variant for PostgreSQL (works on SQLite too)
    type_annotation_map = {
        dict: JSON().with_variant(JSONB(), "postgresql"),
        dict[str, str]: JSON().with_variant(JSONB(), "postgresql"),
        list[str]: JSON().with_variant(JSONB(), "postgresql"),
        uuid.UUID: Uuid,
    }


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Webhook(Base, TimestampMixin):
    """Tenant-scoped webhook subscription."""

    __tablename__ = "webhooks"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    # Set once at creation; readable only for signing
    secret: Mapped[str] = mapped_column(String(64), nullable=False)
    events: Mapped[list[str]] = mapped_column(default=list)
    # Encrypted values when an encryption key is configured
    headers: Mapped[dict[str, str] | None] = mapped_column(nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    # Deliveries are removed explicitly by store.delete_subscriber
    deliveries: Mapped[list["WebhookDelivery"]] = relationship(
        back_populates="webhook",
        passive_deletes=True,
    )

    __table_args__ = (Index("ix_webhooks_tenant_active", "tenant_id", "is_active"),)

    def subscribes_to(self, event: str) -> bool:
        """Check if this webhook is active and subscribed to the given event."""
        return self.is_active and event in self.events

    def __repr__(self) -> str:
        return f"<Webhook {self.name} tenant={self.tenant_id}>"


class WebhookDelivery(Base, TimestampMixin):
    """Audit record of one event delivery to one subscriber."""

    __tablename__ = "webhook_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    webhook_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("webhooks.id"),
        nullable=False,
        index=True,
    )
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(default=dict)
    # Exact bytes sent on every attempt, the signature is computed over these
    body: Mapped[str] = mapped_column(Text, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    success: Mapped[bool | None] = mapped_column(Boolean, nullable=True, index=True)
    status_code: Mapped[int | None] = mapped_column(nullable=True)
    response: Mapped[Any | None] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=True
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    webhook: Mapped["Webhook"] = relationship(back_populates="deliveries")

    __table_args__ = (Index("ix_webhook_deliveries_webhook_created", "webhook_id", "created_at"),)

    @property
    def is_pending(self) -> bool:
        return self.success is None

    def __repr__(self) -> str:
        return f"<WebhookDelivery {self.event} success={self.success} attempts={self.attempts}>"
