"""Celery tasks for durable webhook delivery."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from linkhooks.core.db import session_scope
from linkhooks.models.webhook_delivery import WebhookDeliveryStatus
from linkhooks.services.delivery_repository import DeliveryRepository
from linkhooks.services.delivery_worker import DEACTIVATED_MESSAGE, DeliveryOutcome, DeliveryWorker
from linkhooks.services.subscription_repository import SubscriptionRepository
from linkhooks.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _attempt(
    delivery_id: str,
    url: str,
    payload: dict[str, Any],
    secret: str,
    attempt: int,
) -> DeliveryOutcome:
    worker = DeliveryWorker.from_settings(session_factory=session_scope, check_active_before_retry=False)
    try:
        return await worker.attempt_once(delivery_id, url, payload, secret, attempt)
    finally:
        await worker.aclose()


@celery_app.task(
    name="deliver_webhook",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def deliver_webhook_task(self, delivery_id: str, attempt: int = 1) -> dict:
    """Run one attempt of a webhook delivery and schedule the next one on failure.

    Task Flow:
    1. Load the pending delivery and its subscription from the database
    2. Skip deliveries that are gone or already terminal
    3. Fail deliveries whose subscription was removed or deactivated
    4. Perform the signed HTTP attempt and record its outcome
    5. Re-enqueue the task for ``attempt + 1`` after the backoff delay

    Only ids travel through the broker; the payload snapshot and secret are
    read from the database so every attempt resends the same bytes.

    Args:
        delivery_id: Identifier of the pending delivery record
        attempt: Attempt number, starting at 1

    Returns:
        dict with delivery status and details
    """
    logger.info(f"Starting webhook delivery task for delivery {delivery_id} (attempt {attempt})")

    with session_scope() as session:
        deliveries = DeliveryRepository(session)
        delivery = deliveries.get(delivery_id)

        if delivery is None:
            logger.error(f"Delivery {delivery_id} not found in database")
            return {"status": "skipped", "reason": "delivery_not_found"}

        if delivery.status != WebhookDeliveryStatus.PENDING.value:
            logger.info(f"Delivery {delivery_id} is already {delivery.status}, skipping")
            return {"status": "skipped", "reason": f"already_{delivery.status}"}

        subscription = SubscriptionRepository(session).get_by_id(delivery.subscription_id)
        if subscription is None or not subscription.is_active:
            logger.info(f"Subscription {delivery.subscription_id} is inactive, failing delivery {delivery_id}")
            deliveries.update(
                delivery_id,
                status=WebhookDeliveryStatus.FAILED,
                attempt_count=max(attempt - 1, 1),
                status_code=delivery.status_code,
                response=DEACTIVATED_MESSAGE,
            )
            return {"status": "skipped", "reason": "subscription_inactive"}

        url = subscription.url
        secret = subscription.secret
        payload = dict(delivery.payload)

    outcome = asyncio.run(_attempt(delivery_id, url, payload, secret, attempt))

    if outcome.will_retry:
        deliver_webhook_task.apply_async(
            kwargs={"delivery_id": delivery_id, "attempt": attempt + 1},
            countdown=outcome.retry_delay,
        )
        logger.info(f"Scheduled attempt {attempt + 1} for delivery {delivery_id} in {outcome.retry_delay}s")
        status = WebhookDeliveryStatus.PENDING
    elif outcome.success:
        status = WebhookDeliveryStatus.SUCCESS
    else:
        status = WebhookDeliveryStatus.FAILED

    return {
        "status": status.value,
        "delivery_id": delivery_id,
        "attempt": attempt,
        "status_code": outcome.status_code,
        "response_time_ms": outcome.response_time_ms,
    }
