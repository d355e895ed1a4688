"""Pydantic schemas for webhook subscriptions, deliveries and event envelopes."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from linkhooks.models.webhook import WebhookEvent

MIN_SECRET_LENGTH = 16


def _validate_url(value: str) -> str:
    value = value.strip()
    if any(c.isspace() for c in value):
        raise ValueError("URL must not contain whitespace")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValueError("URL must be an absolute http:// or https:// URL")
    return value


def _validate_events(value: list[WebhookEvent]) -> list[WebhookEvent]:
    if not value:
        raise ValueError("Events list cannot be empty")
    # Keep first occurrence order, drop duplicates
    return list(dict.fromkeys(value))


def _validate_secret(value: str) -> str:
    if len(value) < MIN_SECRET_LENGTH:
        raise ValueError(f"Webhook secret must be at least {MIN_SECRET_LENGTH} characters")
    return value


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SubscriptionCreate(BaseModel):
    """Payload used when registering a webhook subscription."""

    url: str = Field(description="Absolute URL receiving POST requests")
    events: list[WebhookEvent] = Field(description="Event kinds to subscribe to")
    secret: str = Field(description="Shared secret used to sign payloads (min 16 chars)")
    is_active: bool = Field(default=True, description="Whether the subscription receives events")

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        return _validate_url(value)

    @field_validator("events")
    @classmethod
    def validate_events(cls, value: list[WebhookEvent]) -> list[WebhookEvent]:
        return _validate_events(value)

    @field_validator("secret")
    @classmethod
    def validate_secret(cls, value: str) -> str:
        return _validate_secret(value)


class SubscriptionUpdate(BaseModel):
    """Payload used when updating a subscription (all fields optional)."""

    url: str | None = Field(default=None, description="Absolute URL receiving POST requests")
    events: list[WebhookEvent] | None = Field(default=None, description="Event kinds to subscribe to")
    secret: str | None = Field(default=None, description="Replacement shared secret")
    is_active: bool | None = Field(default=None, description="Whether the subscription receives events")

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str | None) -> str | None:
        return _validate_url(value) if value is not None else value

    @field_validator("events")
    @classmethod
    def validate_events(cls, value: list[WebhookEvent] | None) -> list[WebhookEvent] | None:
        return _validate_events(value) if value is not None else value

    @field_validator("secret")
    @classmethod
    def validate_secret(cls, value: str | None) -> str | None:
        return _validate_secret(value) if value is not None else value


class SubscriptionResponse(BaseModel):
    """Response model returned by API endpoints; never includes the secret."""

    id: str = Field(description="Subscription identifier")
    owner_id: str = Field(description="Account that owns the subscription")
    url: str
    events: list[WebhookEvent]
    is_active: bool
    secret_hint: str = Field(description="Last four characters of the secret")
    last_triggered_at: datetime | None = Field(description="Last successful delivery")
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, subscription: Any) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            owner_id=subscription.owner_id,
            url=subscription.url,
            events=subscription.events,
            is_active=subscription.is_active,
            secret_hint=f"****{subscription.secret[-4:]}",
            last_triggered_at=subscription.last_triggered_at,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class VisitorMetadata(BaseModel):
    """Coarse, privacy-reduced visitor fields attached to an event."""

    model_config = ConfigDict(populate_by_name=True)

    ip_hash: str | None = Field(default=None, alias="ipHash")
    device: str | None = None
    country: str | None = None
    city: str | None = None
    browser: str | None = None
    os: str | None = None


class EventEnvelope(BaseModel):
    """Canonical payload sent to receivers."""

    event: WebhookEvent
    timestamp: str = Field(default_factory=_utc_timestamp)
    data: dict[str, Any] = Field(default_factory=dict)
    visitor: VisitorMetadata | None = None

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON-ready body; ``visitor`` is omitted when empty."""
        payload: dict[str, Any] = {
            "event": self.event.value,
            "timestamp": self.timestamp,
            "data": self.model_dump(mode="json", include={"data"})["data"],
        }
        if self.visitor is not None:
            visitor = self.visitor.model_dump(by_alias=True, exclude_none=True)
            if visitor:
                payload["visitor"] = visitor
        return payload


class WebhookTestResponse(BaseModel):
    """Response model for the manual test-event trigger."""

    success: bool
    message: str
    delivery_ids: list[str] = Field(default_factory=list)


class WebhookDeliveryResponse(BaseModel):
    """Response model for webhook delivery history."""

    id: str = Field(description="Delivery identifier")
    subscription_id: str = Field(description="Associated subscription ID")
    event: str = Field(description="Event kind that triggered this delivery")
    status: str = Field(description="Delivery status (pending, success, failed)")
    status_code: int | None = Field(description="Last HTTP status code (0 for network errors)")
    response: str | None = Field(description="Truncated response body or error")
    response_time_ms: int | None = Field(description="Response time of the last attempt")
    attempt_count: int = Field(description="Number of attempts made")
    created_at: datetime
    delivered_at: datetime | None
    completed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)
