"""Dispatch of delivery jobs to the delivery worker."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from linkhooks.services.delivery_worker import DeliveryWorker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryJob:
    """Everything needed to run the attempt chain of one delivery."""

    delivery_id: str
    subscription_id: str
    url: str
    payload: dict[str, Any]
    secret: str = field(repr=False)
    attempt: int = 1


class Dispatcher(Protocol):
    """Hands delivery jobs off without waiting for their outcome."""

    def dispatch(self, job: DeliveryJob) -> None: ...

    async def shutdown(self, timeout: float | None = None) -> None: ...


class InProcessDispatcher:
    """Runs deliveries as supervised asyncio tasks of the current event loop.

    Each job becomes one task kept in a tracked set until it finishes; any
    exception escaping a task is logged and never reaches the producer.
    Retry timers are in-process, so pending deliveries do not survive a
    restart (see :class:`CeleryDispatcher` for the durable variant).
    """

    def __init__(self, worker: DeliveryWorker) -> None:
        self._worker = worker
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def dispatch(self, job: DeliveryJob) -> None:
        task = asyncio.get_running_loop().create_task(
            self._worker.deliver(job.delivery_id, job.url, job.payload, job.secret, job.attempt),
            name=f"webhook-delivery-{job.delivery_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug(f"Dispatched webhook delivery {job.delivery_id} for subscription {job.subscription_id}")

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Webhook delivery task {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Webhook delivery task {task.get_name()} crashed: {exc}", exc_info=exc)

    async def drain(self) -> None:
        """Wait until every dispatched delivery has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float | None = 30.0) -> None:
        """Drain in-flight deliveries, cancel stragglers and close the HTTP client."""
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} in-flight webhook deliveries")
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Cancelling {len(self._tasks)} webhook deliveries still running at shutdown")
                for task in list(self._tasks):
                    task.cancel()
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._worker.aclose()


class CeleryDispatcher:
    """Enqueues deliveries on the Celery broker so retries survive restarts.

    Only identifiers travel through the broker; the task reloads the payload
    snapshot and secret from the database.
    """

    def dispatch(self, job: DeliveryJob) -> None:
        from linkhooks.tasks.webhook_tasks import deliver_webhook_task

        deliver_webhook_task.delay(delivery_id=job.delivery_id, attempt=job.attempt)
        logger.debug(f"Enqueued webhook delivery task for delivery {job.delivery_id}")

    async def shutdown(self, timeout: float | None = None) -> None:
        return None
