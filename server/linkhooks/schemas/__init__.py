"""Pydantic schemas exposed for API and service modules."""
from .webhook import (
    EventEnvelope,
    SubscriptionCreate,
    SubscriptionResponse,
    SubscriptionUpdate,
    WebhookTestResponse,
    VisitorMetadata,
    WebhookDeliveryResponse,
)

__all__ = [
    "EventEnvelope",
    "SubscriptionCreate",
    "SubscriptionResponse",
    "SubscriptionUpdate",
    "WebhookTestResponse",
    "VisitorMetadata",
    "WebhookDeliveryResponse",
]
