"""Tests for event fan-out and the in-process dispatcher."""
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager

import httpx
import pytest
import pytest_asyncio

from linkhooks.models.webhook import WebhookEvent
from linkhooks.models.webhook_delivery import WebhookDeliveryStatus
from linkhooks.schemas.webhook import VisitorMetadata
from linkhooks.services.delivery_repository import DeliveryRepository
from linkhooks.services.delivery_worker import DeliveryWorker
from linkhooks.services.dispatcher import DeliveryJob, InProcessDispatcher
from linkhooks.services.event_emitter import WebhookEventEmitter
from linkhooks.services.signing import SIGNATURE_HEADER, verify_signature

TEST_SECRET = "s3cr3t-minimum-16ch"


class RecordingDispatcher:
    def __init__(self) -> None:
        self.jobs: list[DeliveryJob] = []

    def dispatch(self, job: DeliveryJob) -> None:
        self.jobs.append(job)

    async def shutdown(self, timeout: float | None = None) -> None:
        return None


class BrokenDispatcher(RecordingDispatcher):
    def dispatch(self, job: DeliveryJob) -> None:
        raise RuntimeError("queue unavailable")


async def no_sleep(delay: float) -> None:
    return None


@pytest_asyncio.fixture
async def make_dispatcher(session_factory):
    dispatchers: list[InProcessDispatcher] = []

    def _make(handler) -> InProcessDispatcher:
        worker = DeliveryWorker(
            session_factory=session_factory,
            transport=httpx.MockTransport(handler),
            sleep=no_sleep,
        )
        dispatcher = InProcessDispatcher(worker)
        dispatchers.append(dispatcher)
        return dispatcher

    yield _make

    for dispatcher in dispatchers:
        await dispatcher.shutdown(timeout=1.0)


class TestEmit:
    @pytest.mark.asyncio
    async def test_fans_out_to_matching_active_subscriptions(self, session_factory, make_subscription, load_delivery) -> None:
        first = make_subscription(events=[WebhookEvent.PROFILE_VIEW])
        second = make_subscription(events=[WebhookEvent.PROFILE_VIEW, WebhookEvent.LINK_CLICK])
        make_subscription(events=[WebhookEvent.LINK_CLICK])
        make_subscription(events=[WebhookEvent.PROFILE_VIEW], is_active=False)
        make_subscription(owner_id="U2", events=[WebhookEvent.PROFILE_VIEW])
        dispatcher = RecordingDispatcher()
        emitter = WebhookEventEmitter(dispatcher, session_factory)

        delivery_ids = await emitter.emit("U1", WebhookEvent.PROFILE_VIEW, {"profileId": "p1"})

        assert len(delivery_ids) == 2
        assert {job.subscription_id for job in dispatcher.jobs} == {first.id, second.id}
        assert [job.delivery_id for job in dispatcher.jobs] == delivery_ids
        for delivery_id in delivery_ids:
            delivery = load_delivery(delivery_id)
            assert delivery.status == WebhookDeliveryStatus.PENDING
            assert delivery.attempt_count == 1
            assert delivery.event == "profile_view"

    @pytest.mark.asyncio
    async def test_envelope_is_built_once_and_shared(self, session_factory, make_subscription, load_delivery) -> None:
        make_subscription(events=[WebhookEvent.LINK_CLICK])
        make_subscription(events=[WebhookEvent.LINK_CLICK])
        dispatcher = RecordingDispatcher()
        emitter = WebhookEventEmitter(dispatcher, session_factory)

        await emitter.emit(
            "U1",
            "link_click",
            {"linkId": "l1", "profileId": "p1"},
            {"ipHash": "abc123", "country": "DE", "city": None},
        )

        payloads = [job.payload for job in dispatcher.jobs]
        assert payloads[0] == payloads[1]
        payload = payloads[0]
        assert payload["event"] == "link_click"
        assert payload["data"] == {"linkId": "l1", "profileId": "p1"}
        assert payload["visitor"] == {"ipHash": "abc123", "country": "DE"}
        assert payload["timestamp"].endswith("Z")
        assert load_delivery(dispatcher.jobs[0].delivery_id).payload == payload

    @pytest.mark.asyncio
    async def test_visitor_is_omitted_when_absent(self, session_factory, make_subscription) -> None:
        make_subscription(events=[WebhookEvent.FORM_SUBMISSION])
        dispatcher = RecordingDispatcher()
        emitter = WebhookEventEmitter(dispatcher, session_factory)

        await emitter.emit("U1", WebhookEvent.FORM_SUBMISSION, {"formId": "f1"}, VisitorMetadata())

        assert "visitor" not in dispatcher.jobs[0].payload

    @pytest.mark.asyncio
    async def test_no_subscriptions_is_a_no_op(self, session_factory) -> None:
        dispatcher = RecordingDispatcher()
        emitter = WebhookEventEmitter(dispatcher, session_factory)

        assert await emitter.emit("U1", WebhookEvent.PROFILE_VIEW, {}) == []
        assert dispatcher.jobs == []

    @pytest.mark.asyncio
    async def test_unknown_event_kind_is_rejected(self, session_factory) -> None:
        emitter = WebhookEventEmitter(RecordingDispatcher(), session_factory)

        with pytest.raises(ValueError):
            await emitter.emit("U1", "page_scroll", {})

    @pytest.mark.asyncio
    async def test_lookup_failure_resolves_nothing(self, caplog) -> None:
        @contextmanager
        def broken_scope():
            raise RuntimeError("database unavailable")
            yield

        dispatcher = RecordingDispatcher()
        emitter = WebhookEventEmitter(dispatcher, broken_scope)

        with caplog.at_level(logging.ERROR):
            delivery_ids = await emitter.emit("U1", WebhookEvent.PROFILE_VIEW, {})

        assert delivery_ids == []
        assert dispatcher.jobs == []
        assert "database unavailable" in caplog.text

    @pytest.mark.asyncio
    async def test_dispatch_failure_keeps_pending_record(self, session_factory, make_subscription, load_delivery, caplog) -> None:
        make_subscription()
        emitter = WebhookEventEmitter(BrokenDispatcher(), session_factory)

        with caplog.at_level(logging.ERROR):
            delivery_ids = await emitter.emit("U1", WebhookEvent.PROFILE_VIEW, {})

        assert len(delivery_ids) == 1
        assert load_delivery(delivery_ids[0]).status == WebhookDeliveryStatus.PENDING
        assert "queue unavailable" in caplog.text


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_emit_returns_before_delivery_and_record_reaches_success(
        self, session_factory, make_subscription, load_delivery, load_subscription, make_dispatcher
    ) -> None:
        release = asyncio.Event()
        received: list[httpx.Request] = []

        async def receiver(request: httpx.Request) -> httpx.Response:
            await release.wait()
            received.append(request)
            return httpx.Response(200, text="ok")

        subscription = make_subscription(owner_id="U1", events=[WebhookEvent.PROFILE_VIEW], secret=TEST_SECRET)
        dispatcher = make_dispatcher(receiver)
        emitter = WebhookEventEmitter(dispatcher, session_factory)

        delivery_ids = await emitter.emit("U1", WebhookEvent.PROFILE_VIEW, {"profileId": "p1"})

        assert len(delivery_ids) == 1
        assert load_delivery(delivery_ids[0]).status == WebhookDeliveryStatus.PENDING
        assert dispatcher.in_flight == 1

        release.set()
        await dispatcher.drain()

        delivery = load_delivery(delivery_ids[0])
        assert delivery.status == WebhookDeliveryStatus.SUCCESS
        assert delivery.attempt_count == 1
        assert load_subscription(subscription.id).last_triggered_at is not None
        assert verify_signature(received[0].content, received[0].headers[SIGNATURE_HEADER], TEST_SECRET) is True

    @pytest.mark.asyncio
    async def test_failing_subscription_does_not_affect_others(
        self, session_factory, make_subscription, load_delivery, make_dispatcher
    ) -> None:
        release = asyncio.Event()

        async def receiver(request: httpx.Request) -> httpx.Response:
            if request.url.host == "down.example.com":
                return httpx.Response(500)
            await release.wait()
            return httpx.Response(200)

        broken = make_subscription(url="https://down.example.com/hook")
        healthy = make_subscription(url="https://up.example.com/hook")
        dispatcher = make_dispatcher(receiver)
        emitter = WebhookEventEmitter(dispatcher, session_factory)

        await emitter.emit("U1", WebhookEvent.PROFILE_VIEW, {"profileId": "p1"})
        release.set()
        await dispatcher.drain()

        with session_factory() as session:
            broken_records, _ = DeliveryRepository(session).list_for_subscription(broken.id)
            healthy_records, _ = DeliveryRepository(session).list_for_subscription(healthy.id)

        assert broken_records[0].status == WebhookDeliveryStatus.FAILED
        assert broken_records[0].attempt_count == 3
        assert healthy_records[0].status == WebhookDeliveryStatus.SUCCESS
        assert healthy_records[0].attempt_count == 1


class TestInProcessDispatcher:
    @pytest.mark.asyncio
    async def test_crashing_delivery_is_logged_and_contained(self, caplog) -> None:
        class CrashingWorker:
            async def deliver(self, *args, **kwargs):
                raise RuntimeError("worker exploded")

            async def aclose(self) -> None:
                return None

        dispatcher = InProcessDispatcher(CrashingWorker())
        job = DeliveryJob(
            delivery_id="d1",
            subscription_id="s1",
            url="https://example.com",
            payload={},
            secret=TEST_SECRET,
        )

        with caplog.at_level(logging.ERROR):
            dispatcher.dispatch(job)
            await dispatcher.drain()

        assert dispatcher.in_flight == 0
        assert "worker exploded" in caplog.text

    def test_secret_is_hidden_from_job_repr(self) -> None:
        job = DeliveryJob(delivery_id="d1", subscription_id="s1", url="https://example.com", payload={}, secret=TEST_SECRET)
        assert TEST_SECRET not in repr(job)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_stragglers(self, session_factory, make_subscription, load_delivery, make_dispatcher) -> None:
        async def receiver(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200)

        make_subscription()
        dispatcher = make_dispatcher(receiver)
        emitter = WebhookEventEmitter(dispatcher, session_factory)
        delivery_ids = await emitter.emit("U1", WebhookEvent.PROFILE_VIEW, {})
        await asyncio.sleep(0)

        await dispatcher.shutdown(timeout=0.05)

        assert dispatcher.in_flight == 0
        assert load_delivery(delivery_ids[0]).status == WebhookDeliveryStatus.PENDING
