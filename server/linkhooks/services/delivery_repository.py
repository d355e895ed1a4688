"""Delivery record store for webhook deliveries."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from linkhooks.models.webhook_delivery import WebhookDelivery, WebhookDeliveryStatus


class DeliveryRepository:
    """Durable log of webhook deliveries.

    Records are created ``pending`` before the first network attempt and only
    ever move forward through :meth:`update`, which is a conditional
    per-record statement. Terminal records (``success``/``failed``) are never
    modified again, so replaying a terminal update is harmless.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, subscription_id: str, event: str, payload: dict[str, Any]) -> str:
        """Persist a pending delivery with its payload snapshot.

        Args:
            subscription_id: Owning subscription
            event: Event kind of the payload
            payload: Envelope that will be sent on every attempt

        Returns:
            Identifier of the created delivery
        """
        delivery = WebhookDelivery(
            subscription_id=subscription_id,
            event=event,
            payload=payload,
            status=WebhookDeliveryStatus.PENDING.value,
            attempt_count=1,
        )
        self._session.add(delivery)
        self._session.commit()
        return delivery.id

    def get(self, delivery_id: str) -> WebhookDelivery | None:
        """Fetch a delivery by its identifier."""
        return self._session.get(WebhookDelivery, delivery_id)

    def update(
        self,
        delivery_id: str,
        *,
        status: WebhookDeliveryStatus,
        attempt_count: int,
        status_code: int | None = None,
        response: str | None = None,
        response_time_ms: int | None = None,
        delivered_at: datetime | None = None,
    ) -> bool:
        """Record the outcome of an attempt.

        Args:
            delivery_id: Delivery to update
            status: New status; ``pending`` keeps the record open for a retry
            attempt_count: Number of the attempt whose outcome is recorded
            status_code: HTTP status code, 0 for transport errors
            response: Truncated response body or error message
            response_time_ms: Duration of the attempt
            delivered_at: Delivery time, set on success

        Returns:
            True if the record was still pending and got updated
        """
        values: dict[str, Any] = {
            "status": status.value,
            "attempt_count": attempt_count,
            "status_code": status_code,
            "response": response,
            "response_time_ms": response_time_ms,
        }
        if delivered_at is not None:
            values["delivered_at"] = delivered_at
        if status.is_terminal:
            values["completed_at"] = datetime.now(timezone.utc)

        result = self._session.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.status == WebhookDeliveryStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self._session.commit()
        return result.rowcount > 0

    def list_for_subscription(
        self, subscription_id: str, limit: int = 50, offset: int = 0
    ) -> tuple[Sequence[WebhookDelivery], int]:
        """Get delivery history for a subscription with pagination.

        Returns:
            Tuple of (deliveries sequence, total count)
        """
        total = self._session.scalar(
            select(func.count())
            .select_from(WebhookDelivery)
            .where(WebhookDelivery.subscription_id == subscription_id)
        )
        deliveries = self._session.scalars(
            select(WebhookDelivery)
            .where(WebhookDelivery.subscription_id == subscription_id)
            .order_by(WebhookDelivery.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        return deliveries, total or 0

    def list_pending(self, older_than: datetime | None = None, limit: int = 100) -> Sequence[WebhookDelivery]:
        """Get pending deliveries, oldest first, for an external re-drive sweep."""
        query = select(WebhookDelivery).where(WebhookDelivery.status == WebhookDeliveryStatus.PENDING.value)
        if older_than is not None:
            query = query.where(WebhookDelivery.created_at < older_than)
        return self._session.scalars(query.order_by(WebhookDelivery.created_at.asc()).limit(limit)).all()
