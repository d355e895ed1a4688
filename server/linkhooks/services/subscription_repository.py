"""Subscription repository for database operations."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from linkhooks.models.webhook import WebhookEvent, WebhookSubscription
from linkhooks.schemas.webhook import SubscriptionCreate, SubscriptionUpdate


class SubscriptionRepository:
    """Handles database operations for WebhookSubscription entities."""

    def __init__(self, session: Session) -> None:
        """Initialize repository with a SQLAlchemy session.

        Args:
            session: Active database session for executing queries
        """
        self._session = session

    def create(self, owner_id: str, subscription: SubscriptionCreate) -> WebhookSubscription:
        """Create a new subscription for ``owner_id``.

        Args:
            owner_id: Account that receives notifications
            subscription: Validated SubscriptionCreate schema

        Returns:
            Created WebhookSubscription instance
        """
        db_subscription = WebhookSubscription(
            owner_id=owner_id,
            url=subscription.url,
            secret=subscription.secret,
            events=[event.value for event in subscription.events],
            is_active=subscription.is_active,
        )
        self._session.add(db_subscription)
        self._session.commit()
        self._session.refresh(db_subscription)
        return db_subscription

    def get_by_id(self, subscription_id: str) -> WebhookSubscription | None:
        """Fetch a subscription by its identifier."""
        return self._session.get(WebhookSubscription, subscription_id)

    def get_for_owner(self, owner_id: str, subscription_id: str) -> WebhookSubscription | None:
        """Fetch a subscription only if it belongs to ``owner_id``."""
        subscription = self.get_by_id(subscription_id)
        if subscription is None or subscription.owner_id != owner_id:
            return None
        return subscription

    def list_for_owner(self, owner_id: str) -> Sequence[WebhookSubscription]:
        """Fetch all subscriptions of an owner, newest first."""
        return (
            self._session.query(WebhookSubscription)
            .filter(WebhookSubscription.owner_id == owner_id)
            .order_by(WebhookSubscription.created_at.desc())
            .all()
        )

    def update(
        self, owner_id: str, subscription_id: str, changes: SubscriptionUpdate
    ) -> WebhookSubscription | None:
        """Apply a partial update to an owner's subscription.

        Args:
            owner_id: Account that must own the subscription
            subscription_id: Subscription identifier
            changes: SubscriptionUpdate schema with fields to change

        Returns:
            Updated WebhookSubscription instance if found, None otherwise
        """
        db_subscription = self.get_for_owner(owner_id, subscription_id)
        if db_subscription is None:
            return None

        # Update only provided fields
        if changes.url is not None:
            db_subscription.url = changes.url
        if changes.events is not None:
            db_subscription.events = [event.value for event in changes.events]
        if changes.secret is not None:
            db_subscription.secret = changes.secret
        if changes.is_active is not None:
            db_subscription.is_active = changes.is_active

        self._session.commit()
        self._session.refresh(db_subscription)
        return db_subscription

    def delete(self, owner_id: str, subscription_id: str) -> bool:
        """Delete an owner's subscription.

        Returns:
            True if the subscription was deleted, False if not found
        """
        db_subscription = self.get_for_owner(owner_id, subscription_id)
        if db_subscription is None:
            return False

        self._session.delete(db_subscription)
        self._session.commit()
        return True

    def find_active_subscriptions(
        self, owner_id: str, event: WebhookEvent | str
    ) -> list[WebhookSubscription]:
        """Get active subscriptions of ``owner_id`` that listen to ``event``.

        Args:
            owner_id: Account whose subscriptions should be resolved
            event: Event kind to filter by

        Returns:
            Matching subscriptions; order is unspecified
        """
        # Event membership is checked in Python; JSON array operators differ per database
        candidates = self._session.scalars(
            select(WebhookSubscription).where(
                WebhookSubscription.owner_id == owner_id,
                WebhookSubscription.is_active.is_(True),
            )
        ).all()
        return [subscription for subscription in candidates if subscription.subscribes_to(event)]

    def is_active(self, subscription_id: str) -> bool:
        """Return True when the subscription exists and is active."""
        active = self._session.scalar(
            select(WebhookSubscription.is_active).where(WebhookSubscription.id == subscription_id)
        )
        return bool(active)

    def mark_triggered(self, subscription_id: str, when: datetime | None = None) -> None:
        """Record the time of the latest successful delivery."""
        self._session.execute(
            update(WebhookSubscription)
            .where(WebhookSubscription.id == subscription_id)
            .values(last_triggered_at=when or datetime.now(timezone.utc))
        )
        self._session.commit()
