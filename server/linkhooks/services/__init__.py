"""Services module for webhook signing, storage and delivery."""
from __future__ import annotations

from .delivery_repository import DeliveryRepository
from .delivery_worker import DeliveryOutcome, DeliveryWorker
from .dispatcher import CeleryDispatcher, DeliveryJob, Dispatcher, InProcessDispatcher
from .event_emitter import WebhookEventEmitter
from .signing import canonical_json, sign_payload, verify_signature
from .subscription_repository import SubscriptionRepository

__all__ = [
    "CeleryDispatcher",
    "DeliveryJob",
    "DeliveryOutcome",
    "DeliveryRepository",
    "DeliveryWorker",
    "Dispatcher",
    "InProcessDispatcher",
    "SubscriptionRepository",
    "WebhookEventEmitter",
    "canonical_json",
    "sign_payload",
    "verify_signature",
]
