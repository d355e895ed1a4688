"""Tests for the durable Celery delivery backend."""
from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest
from kombu import Queue

from linkhooks.models.webhook_delivery import WebhookDeliveryStatus
from linkhooks.services.delivery_repository import DeliveryRepository
from linkhooks.services.delivery_worker import DEACTIVATED_MESSAGE, DeliveryWorker
from linkhooks.services.dispatcher import CeleryDispatcher, DeliveryJob
from linkhooks.services.subscription_repository import SubscriptionRepository
from linkhooks.tasks import webhook_tasks
from linkhooks.tasks.celery_app import celery_app
from linkhooks.tasks.webhook_tasks import deliver_webhook_task

PAYLOAD = {"event": "link_click", "timestamp": "2024-05-01T10:00:00.000Z", "data": {"linkId": "l1"}}


@pytest.fixture
def subscription(make_subscription):
    return make_subscription()


@pytest.fixture
def pending_delivery(session_factory, subscription) -> str:
    with session_factory() as session:
        return DeliveryRepository(session).create(subscription.id, "link_click", PAYLOAD)


@pytest.fixture
def receiver(monkeypatch, session_factory):
    """Route task HTTP traffic to a scripted mock receiver and the test database."""
    state = {"status": 200, "requests": []}

    def handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(request)
        return httpx.Response(state["status"], text="receiver says hi")

    real_from_settings = DeliveryWorker.from_settings

    def from_settings(settings=None, **overrides):
        return real_from_settings(settings, transport=httpx.MockTransport(handler), **overrides)

    monkeypatch.setattr(webhook_tasks, "session_scope", session_factory)
    monkeypatch.setattr(webhook_tasks.DeliveryWorker, "from_settings", from_settings)
    return state


def test_successful_attempt_completes_delivery(receiver, pending_delivery, load_delivery) -> None:
    with patch.object(deliver_webhook_task, "apply_async") as mock_apply:
        result = deliver_webhook_task.run(pending_delivery, 1)

    delivery = load_delivery(pending_delivery)
    assert result["status"] == "success"
    assert result["status_code"] == 200
    assert len(receiver["requests"]) == 1
    assert delivery.status == WebhookDeliveryStatus.SUCCESS
    assert delivery.attempt_count == 1
    mock_apply.assert_not_called()


def test_failed_attempt_schedules_next_with_backoff(receiver, pending_delivery, load_delivery) -> None:
    receiver["status"] = 500

    with patch.object(deliver_webhook_task, "apply_async") as mock_apply:
        result = deliver_webhook_task.run(pending_delivery, 2)

    delivery = load_delivery(pending_delivery)
    assert result["status"] == "pending"
    assert delivery.status == WebhookDeliveryStatus.PENDING
    assert delivery.attempt_count == 2
    mock_apply.assert_called_once_with(
        kwargs={"delivery_id": pending_delivery, "attempt": 3},
        countdown=2.0,
    )


def test_last_attempt_failure_is_terminal(receiver, pending_delivery, load_delivery) -> None:
    receiver["status"] = 503

    with patch.object(deliver_webhook_task, "apply_async") as mock_apply:
        result = deliver_webhook_task.run(pending_delivery, 3)

    delivery = load_delivery(pending_delivery)
    assert result["status"] == "failed"
    assert delivery.status == WebhookDeliveryStatus.FAILED
    assert delivery.attempt_count == 3
    assert delivery.response == "receiver says hi"
    mock_apply.assert_not_called()


def test_terminal_delivery_is_skipped(receiver, pending_delivery, session_factory) -> None:
    with session_factory() as session:
        DeliveryRepository(session).update(
            pending_delivery, status=WebhookDeliveryStatus.SUCCESS, attempt_count=1, status_code=200
        )

    result = deliver_webhook_task.run(pending_delivery, 2)

    assert result == {"status": "skipped", "reason": "already_success"}
    assert receiver["requests"] == []


def test_missing_delivery_is_skipped(receiver) -> None:
    result = deliver_webhook_task.run("does-not-exist", 1)

    assert result == {"status": "skipped", "reason": "delivery_not_found"}
    assert receiver["requests"] == []


def test_inactive_subscription_fails_delivery(receiver, pending_delivery, subscription, session_factory, load_delivery) -> None:
    with session_factory() as session:
        SubscriptionRepository(session).get_by_id(subscription.id).is_active = False

    result = deliver_webhook_task.run(pending_delivery, 2)

    delivery = load_delivery(pending_delivery)
    assert result["reason"] == "subscription_inactive"
    assert receiver["requests"] == []
    assert delivery.status == WebhookDeliveryStatus.FAILED
    assert delivery.attempt_count == 1
    assert delivery.response == DEACTIVATED_MESSAGE


def test_celery_dispatcher_enqueues_ids_only() -> None:
    job = DeliveryJob(
        delivery_id="d1",
        subscription_id="s1",
        url="https://example.com/hook",
        payload=PAYLOAD,
        secret="s3cr3t-minimum-16ch",
    )

    with patch.object(deliver_webhook_task, "delay") as mock_delay:
        CeleryDispatcher().dispatch(job)

    mock_delay.assert_called_once_with(delivery_id="d1", attempt=1)


def test_deliveries_route_to_durable_webhook_queue() -> None:
    queues = {queue.name: queue for queue in celery_app.conf.task_queues}

    webhook_queue = queues["webhook_queue"]
    assert isinstance(webhook_queue, Queue)
    assert webhook_queue.durable is True
    assert webhook_queue.exchange.name == "webhooks"
    assert celery_app.conf.task_routes["deliver_webhook"]["queue"] == "webhook_queue"
