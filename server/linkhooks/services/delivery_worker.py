"""HTTP delivery of signed webhook payloads with retry and backoff."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

from linkhooks.core.config import Settings, get_settings
from linkhooks.core.db import SessionFactory, session_scope
from linkhooks.models.webhook_delivery import WebhookDeliveryStatus
from linkhooks.services.delivery_repository import DeliveryRepository
from linkhooks.services.signing import SIGNATURE_HEADER, canonical_json, sign_payload
from linkhooks.services.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

# Constants
USER_AGENT = "Linkhooks-Webhook-Delivery-Worker/1.0"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Webhook-Delivery"
DEACTIVATED_MESSAGE = "subscription deactivated"

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of a single delivery attempt."""

    delivery_id: str
    attempt: int
    success: bool
    status_code: int
    response_time_ms: int | None = None
    retry_delay: float | None = None

    @property
    def will_retry(self) -> bool:
        return self.retry_delay is not None


def _truncate(text: str | None, limit: int) -> str | None:
    if text is None:
        return None
    return text[:limit]


class DeliveryWorker:
    """Performs delivery attempts and records every outcome.

    One worker is shared by all deliveries of a process. It owns a pooled
    ``httpx.AsyncClient`` and a semaphore that bounds concurrent requests; the
    semaphore is only held for the duration of a request, never during backoff.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory = session_scope,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        initial_backoff_seconds: float = 1.0,
        max_concurrency: int = 50,
        max_response_length: int = 1000,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
        check_active_before_retry: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max_attempts
        self._initial_backoff_seconds = initial_backoff_seconds
        self._max_response_length = max_response_length
        self._sleep = sleep
        self._check_active_before_retry = check_active_before_retry
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> "DeliveryWorker":
        """Build a worker configured from application settings."""
        settings = settings or get_settings()
        options: dict[str, Any] = {
            "timeout_seconds": settings.webhook_timeout_seconds,
            "max_attempts": settings.webhook_max_attempts,
            "initial_backoff_seconds": settings.webhook_initial_backoff_seconds,
            "max_concurrency": settings.webhook_max_concurrency,
            "max_response_length": settings.webhook_max_response_length,
        }
        options.update(overrides)
        return cls(**options)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1s, 2s, 4s, ...)."""
        return self._initial_backoff_seconds * (2 ** (attempt - 1))

    async def deliver(
        self,
        delivery_id: str,
        url: str,
        payload: dict[str, Any],
        secret: str,
        attempt: int = 1,
    ) -> DeliveryOutcome:
        """Run the attempt chain of one delivery until it reaches a terminal state.

        Attempts are strictly sequential: attempt ``k + 1`` starts only after the
        outcome of attempt ``k`` is recorded and its backoff has elapsed.
        """
        while True:
            outcome = await self.attempt_once(delivery_id, url, payload, secret, attempt)
            if not outcome.will_retry:
                return outcome

            logger.info(
                f"Retrying webhook delivery {delivery_id} in {outcome.retry_delay}s "
                f"(attempt {attempt + 1}/{self._max_attempts})"
            )
            await self._sleep(outcome.retry_delay)

            if self._check_active_before_retry and not self._subscription_active(delivery_id):
                logger.info(f"Subscription for delivery {delivery_id} was deactivated, abandoning retries")
                self._record(
                    delivery_id,
                    status=WebhookDeliveryStatus.FAILED,
                    attempt_count=attempt,
                    status_code=outcome.status_code,
                    response=DEACTIVATED_MESSAGE,
                    response_time_ms=outcome.response_time_ms,
                )
                return DeliveryOutcome(
                    delivery_id=delivery_id,
                    attempt=attempt,
                    success=False,
                    status_code=outcome.status_code,
                    response_time_ms=outcome.response_time_ms,
                )
            attempt += 1

    async def attempt_once(
        self,
        delivery_id: str,
        url: str,
        payload: dict[str, Any],
        secret: str,
        attempt: int = 1,
    ) -> DeliveryOutcome:
        """Perform one HTTP attempt and record its outcome.

        Returns:
            DeliveryOutcome whose ``retry_delay`` is set when another attempt
            should follow after that many seconds
        """
        signature = sign_payload(payload, secret)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            SIGNATURE_HEADER: signature,
            EVENT_HEADER: str(payload.get("event", "")),
            DELIVERY_HEADER: delivery_id,
        }

        logger.info(
            f"Delivering webhook {delivery_id} to {url} (attempt {attempt}/{self._max_attempts})"
        )

        start_time = time.perf_counter()
        status_code = 0
        response_body: str | None = None
        is_success = False

        try:
            async with self._semaphore:
                response = await self._client.post(url, content=canonical_json(payload), headers=headers)
            status_code = response.status_code
            response_body = response.text
            is_success = response.is_success

            if is_success:
                logger.info(f"Webhook {delivery_id} delivered successfully (status: {status_code})")
            else:
                logger.warning(f"Webhook {delivery_id} returned non-2xx status (status: {status_code})")

        except httpx.TimeoutException as e:
            response_body = f"Webhook request timed out after {self._timeout_seconds}s: {e}"
            logger.error(f"Webhook {delivery_id} delivery failed: {response_body}")

        except httpx.RequestError as e:
            response_body = f"Webhook request failed: {e}"
            logger.error(f"Webhook {delivery_id} delivery failed: {response_body}")

        except Exception as e:
            response_body = f"Unexpected error during webhook delivery: {e}"
            logger.error(f"Webhook {delivery_id} delivery failed: {response_body}", exc_info=True)

        response_time_ms = int((time.perf_counter() - start_time) * 1000)
        response_body = _truncate(response_body, self._max_response_length)

        if is_success:
            delivered_at = datetime.now(timezone.utc)
            self._record(
                delivery_id,
                status=WebhookDeliveryStatus.SUCCESS,
                attempt_count=attempt,
                status_code=status_code,
                response=response_body,
                response_time_ms=response_time_ms,
                delivered_at=delivered_at,
                mark_triggered=True,
            )
            return DeliveryOutcome(
                delivery_id=delivery_id,
                attempt=attempt,
                success=True,
                status_code=status_code,
                response_time_ms=response_time_ms,
            )

        should_retry = attempt < self._max_attempts
        recorded = self._record(
            delivery_id,
            status=WebhookDeliveryStatus.PENDING if should_retry else WebhookDeliveryStatus.FAILED,
            attempt_count=attempt,
            status_code=status_code,
            response=response_body,
            response_time_ms=response_time_ms,
        )
        if not should_retry:
            logger.warning(f"Webhook {delivery_id} failed permanently after {attempt} attempt(s)")

        return DeliveryOutcome(
            delivery_id=delivery_id,
            attempt=attempt,
            success=False,
            status_code=status_code,
            response_time_ms=response_time_ms,
            retry_delay=self.backoff_delay(attempt) if should_retry and recorded else None,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _record(
        self,
        delivery_id: str,
        *,
        mark_triggered: bool = False,
        **fields: Any,
    ) -> bool:
        with self._session_factory() as session:
            deliveries = DeliveryRepository(session)
            updated = deliveries.update(delivery_id, **fields)
            if not updated:
                logger.warning(f"Delivery {delivery_id} is missing or already terminal, outcome not recorded")
                return False

            if mark_triggered:
                delivery = deliveries.get(delivery_id)
                if delivery is not None:
                    SubscriptionRepository(session).mark_triggered(
                        delivery.subscription_id, fields.get("delivered_at")
                    )

            logger.debug(f"Updated delivery {delivery_id} with status: {fields['status'].value}")
            return True

    def _subscription_active(self, delivery_id: str) -> bool:
        with self._session_factory() as session:
            delivery = DeliveryRepository(session).get(delivery_id)
            if delivery is None:
                return False
            return SubscriptionRepository(session).is_active(delivery.subscription_id)
