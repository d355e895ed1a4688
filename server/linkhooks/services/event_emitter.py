"""Event emitter: the entry point producers use to notify webhook subscribers."""
from __future__ import annotations

import logging
from typing import Any, Mapping

from linkhooks.core.db import SessionFactory, session_scope
from linkhooks.models.webhook import WebhookEvent
from linkhooks.schemas.webhook import EventEnvelope, VisitorMetadata
from linkhooks.services.delivery_repository import DeliveryRepository
from linkhooks.services.dispatcher import DeliveryJob, Dispatcher
from linkhooks.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


class WebhookEventEmitter:
    """Fans profile events out to every matching webhook subscription."""

    def __init__(self, dispatcher: Dispatcher, session_factory: SessionFactory = session_scope) -> None:
        """Initialize the emitter.

        Args:
            dispatcher: Where delivery jobs are handed off
            session_factory: Transactional session scope used for lookups and records
        """
        self._dispatcher = dispatcher
        self._session_factory = session_factory

    async def emit(
        self,
        owner_id: str,
        event: WebhookEvent | str,
        data: Mapping[str, Any],
        visitor: VisitorMetadata | Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Publish an event to all active subscriptions of ``owner_id`` that listen to it.

        This method:
        1. Resolves matching subscriptions (a lookup error resolves nothing)
        2. Builds the event envelope once
        3. Creates one pending delivery record per subscription
        4. Dispatches each delivery without waiting for its outcome

        Args:
            owner_id: Account whose subscriptions should be notified
            event: Event kind (e.g. "profile_view", "link_click")
            data: Producer-supplied event data
            visitor: Optional privacy-reduced visitor metadata

        Returns:
            Identifiers of the delivery records that were created

        Raises:
            ValueError: If ``event`` is not a known event kind
        """
        event = WebhookEvent(event)

        try:
            with self._session_factory() as session:
                subscriptions = [
                    (subscription.id, subscription.url, subscription.secret)
                    for subscription in SubscriptionRepository(session).find_active_subscriptions(owner_id, event)
                ]
        except Exception as e:
            logger.error(f"Failed to resolve webhook subscriptions for owner {owner_id} (event: {event.value}): {e}", exc_info=True)
            return []

        if not subscriptions:
            logger.debug(f"No active webhook subscriptions for owner {owner_id} (event: {event.value})")
            return []

        if visitor is not None and not isinstance(visitor, VisitorMetadata):
            visitor = VisitorMetadata.model_validate(dict(visitor))
        payload = EventEnvelope(event=event, data=dict(data), visitor=visitor).to_payload()

        logger.info(f"Publishing event '{event.value}' for owner {owner_id} to {len(subscriptions)} subscription(s)")

        delivery_ids: list[str] = []
        for subscription_id, url, secret in subscriptions:
            try:
                with self._session_factory() as session:
                    delivery_id = DeliveryRepository(session).create(subscription_id, event.value, payload)
            except Exception as e:
                logger.error(
                    f"Failed to create delivery record for subscription {subscription_id}: {e}",
                    exc_info=True,
                )
                continue

            delivery_ids.append(delivery_id)
            try:
                self._dispatcher.dispatch(
                    DeliveryJob(
                        delivery_id=delivery_id,
                        subscription_id=subscription_id,
                        url=url,
                        payload=payload,
                        secret=secret,
                    )
                )
            except Exception as e:
                # The pending record stays behind for a re-drive sweep
                logger.error(f"Failed to dispatch webhook delivery {delivery_id}: {e}", exc_info=True)

        return delivery_ids
