"""ORM models exposed for external modules."""
from .base import Base
from .webhook import WebhookEvent, WebhookSubscription
from .webhook_delivery import WebhookDelivery, WebhookDeliveryStatus

__all__ = [
    "Base",
    "WebhookEvent",
    "WebhookSubscription",
    "WebhookDelivery",
    "WebhookDeliveryStatus",
]
