"""Webhook subscription model definition."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Index, JSON, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class WebhookEvent(str, Enum):
    """Profile events a subscription can listen to."""

    PROFILE_VIEW = "profile_view"
    LINK_CLICK = "link_click"
    FORM_SUBMISSION = "form_submission"
    PROFILE_UPDATED = "profile_updated"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookSubscription(Base):
    """A receiver's registered interest in a set of profile events."""

    __tablename__ = "webhook_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str] = mapped_column(Text, nullable=False)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )

    __table_args__ = (
        Index("ix_webhook_subscriptions_owner_id", "owner_id"),
    )

    def subscribes_to(self, event: WebhookEvent | str) -> bool:
        """Return True when this subscription listens to ``event``."""
        value = event.value if isinstance(event, WebhookEvent) else event
        return value in (self.events or [])
