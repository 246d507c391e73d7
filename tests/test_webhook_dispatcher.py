"""
Tests for webhook signing, delivery and retries.
"""
import json
from datetime import timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio

from sandbox_gateway.core.delivery_retry import WebhookRetryQueue
from sandbox_gateway.core.errors import NotFoundError, ValidationError
from sandbox_gateway.database.models import WebhookDelivery, WebhookEndpoint
from sandbox_gateway.integrations.webhook_dispatcher import (
    DEFAULT_EVENTS,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    WebhookDispatcher,
    build_envelope,
    normalize_events,
    serialize,
    sign,
    verify,
)

from .conftest import WORKSPACE, Receiver

SECRET = "whsec_test_secret"


@pytest_asyncio.fixture
async def webhooks(session_factory: Any, test_settings: Any, clock: Any, receiver: Receiver) -> Any:
    client = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
    dispatcher = WebhookDispatcher(session_factory, test_settings, http_client=client, clock=clock)
    yield dispatcher
    await dispatcher.close()
    await client.aclose()


async def endpoint_stats(session_factory: Any, endpoint_id: str) -> WebhookEndpoint:
    async with session_factory() as db:
        return await db.get(WebhookEndpoint, endpoint_id)


async def delivery(session_factory: Any, delivery_id: int) -> WebhookDelivery:
    async with session_factory() as db:
        return await db.get(WebhookDelivery, delivery_id)


class TestSignature:

    def test_sign_and_verify(self) -> None:
        body = serialize({"event": "payment.completed", "data": {"amount": 500000}})
        signature = sign(body, SECRET)

        assert len(signature) == 64
        assert verify(body, signature, SECRET)
        assert verify(body, "sha256=" + signature, SECRET)
        assert not verify(body, signature, "whsec_other")
        assert not verify(body, "", SECRET)

    def test_single_byte_change_fails_verification(self) -> None:
        body = bytearray(serialize({"event": "payment.completed", "data": {"amount": 500000}}))
        signature = sign(bytes(body), SECRET)

        body[10] ^= 0x01
        assert not verify(bytes(body), signature, SECRET)

    def test_envelope_shape(self, clock: Any) -> None:
        envelope = build_envelope("payment.failed", {"id": "sess_1"}, clock.now)

        assert envelope["event"] == "payment.failed"
        assert envelope["data"] == {"id": "sess_1"}
        assert envelope["timestamp"] == "2026-03-10T12:00:00Z"
        assert envelope["webhook_id"].startswith("evt_")

    def test_normalize_events(self) -> None:
        assert normalize_events(None) == DEFAULT_EVENTS
        assert normalize_events(["nonsense"]) == DEFAULT_EVENTS
        assert normalize_events(
            ["payment.refunded", "bogus", "payment.refunded", "subscription.updated"]
        ) == ["payment.refunded", "subscription.updated"]


class TestEndpoints:

    @pytest.mark.asyncio
    async def test_register_defaults(self, webhooks: WebhookDispatcher) -> None:
        endpoint = await webhooks.register_endpoint(WORKSPACE, "https://merchant.example/hooks")

        assert endpoint.secret.startswith("whsec_")
        assert endpoint.events == DEFAULT_EVENTS
        assert endpoint.max_retries == 3
        assert endpoint.retry_delay_ms == 5000
        assert [e.id for e in await webhooks.list_endpoints(WORKSPACE)] == [endpoint.id]
        assert await webhooks.list_endpoints("ws_other") == []

    @pytest.mark.asyncio
    async def test_register_rejects_non_http_url(self, webhooks: WebhookDispatcher) -> None:
        with pytest.raises(ValidationError):
            await webhooks.register_endpoint(WORKSPACE, "ftp://merchant.example/hooks")

    @pytest.mark.asyncio
    async def test_get_endpoint_is_workspace_scoped(self, webhooks: WebhookDispatcher) -> None:
        endpoint = await webhooks.register_endpoint(WORKSPACE, "https://merchant.example/hooks")
        with pytest.raises(NotFoundError):
            await webhooks.get_endpoint("ws_other", endpoint.id)


class TestDeliver:

    @pytest.mark.asyncio
    async def test_successful_delivery_is_signed(
        self, webhooks: WebhookDispatcher, receiver: Receiver, session_factory: Any
    ) -> None:
        endpoint = await webhooks.register_endpoint(WORKSPACE, "https://merchant.example/hooks", secret=SECRET)

        result = await webhooks.deliver(endpoint, "payment.completed", {"id": "sess_1", "amount": 500000})

        assert result.success
        assert result.status_code == 200
        request = receiver.requests[0]
        assert request.headers[EVENT_HEADER] == "payment.completed"
        assert verify(request.content, request.headers[SIGNATURE_HEADER], SECRET)
        body = json.loads(request.content)
        assert body["data"] == {"id": "sess_1", "amount": 500000}
        assert body["webhook_id"] == result.webhook_id

        stats = await endpoint_stats(session_factory, endpoint.id)
        assert (stats.total_attempts, stats.successful_deliveries, stats.failed_deliveries) == (1, 1, 0)
        assert stats.delivery_rate() == 100.0

    @pytest.mark.asyncio
    async def test_non_2xx_is_a_failure(
        self, webhooks: WebhookDispatcher, receiver: Receiver, session_factory: Any
    ) -> None:
        receiver.responder = lambda request: httpx.Response(503)
        endpoint = await webhooks.register_endpoint(WORKSPACE, "https://merchant.example/hooks")

        result = await webhooks.deliver(endpoint, "payment.completed", {"id": "sess_1"})

        assert not result.success
        assert result.status_code == 503
        stats = await endpoint_stats(session_factory, endpoint.id)
        assert (stats.total_attempts, stats.successful_deliveries, stats.failed_deliveries) == (1, 0, 1)
        assert stats.last_failed_delivery is not None

    @pytest.mark.asyncio
    async def test_timeout_and_transport_errors_are_failures(
        self, webhooks: WebhookDispatcher, receiver: Receiver
    ) -> None:
        endpoint = await webhooks.register_endpoint(WORKSPACE, "https://merchant.example/hooks")

        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        def refused(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        receiver.responder = timeout
        timed_out = await webhooks.deliver(endpoint, "payment.completed", {})
        receiver.responder = refused
        unreachable = await webhooks.deliver(endpoint, "payment.completed", {})

        assert not timed_out.success and timed_out.status_code is None
        assert "Timed out" in timed_out.error
        assert not unreachable.success
        assert "Transport error" in unreachable.error

    @pytest.mark.asyncio
    async def test_send_test_event(self, webhooks: WebhookDispatcher, receiver: Receiver) -> None:
        endpoint = await webhooks.register_endpoint(WORKSPACE, "https://merchant.example/hooks")

        result = await webhooks.send_test(WORKSPACE, endpoint.id)

        assert result.success
        assert json.loads(receiver.requests[0].content)["event"] == "webhook.test"


class TestPublishAndRetry:

    @pytest.mark.asyncio
    async def test_publish_only_reaches_subscribed_endpoints(
        self, webhooks: WebhookDispatcher, receiver: Receiver, session_factory: Any
    ) -> None:
        await webhooks.register_endpoint(WORKSPACE, "https://a.example/hooks", events=["payment.completed"])
        await webhooks.register_endpoint(WORKSPACE, "https://b.example/hooks", events=["payment.refunded"])
        await webhooks.register_endpoint("ws_other", "https://c.example/hooks", events=["payment.completed"])

        delivery_ids = await webhooks.publish(WORKSPACE, "payment.completed", {"id": "sess_1"})

        assert len(delivery_ids) == 1
        assert [str(request.url) for request in receiver.requests] == ["https://a.example/hooks"]
        recorded = await delivery(session_factory, delivery_ids[0])
        assert recorded.status == "delivered"
        assert recorded.attempts == 1
        assert recorded.webhook_id == recorded.envelope["webhook_id"]

    @pytest.mark.asyncio
    async def test_dispatch_runs_in_background(self, webhooks: WebhookDispatcher, receiver: Receiver) -> None:
        await webhooks.register_endpoint(WORKSPACE, "https://a.example/hooks")

        webhooks.dispatch(WORKSPACE, "payment.completed", {"id": "sess_1"})
        await webhooks.drain()

        assert len(receiver.requests) == 1

    @pytest.mark.asyncio
    async def test_background_failure_is_recorded_for_retry(
        self, webhooks: WebhookDispatcher, receiver: Receiver, session_factory: Any, clock: Any
    ) -> None:
        receiver.responder = lambda request: httpx.Response(500)
        endpoint = await webhooks.register_endpoint(WORKSPACE, "https://a.example/hooks", retry_delay_ms=1000)

        task = webhooks.dispatch(WORKSPACE, "payment.failed", {"id": "sess_1"})
        await webhooks.drain()

        assert task.exception() is None
        stats = await endpoint_stats(session_factory, endpoint.id)
        assert (stats.total_attempts, stats.failed_deliveries) == (1, 1)
        assert stats.last_failed_delivery == clock.now
        queue = WebhookRetryQueue(session_factory, webhooks, clock=clock)
        assert await queue.get_pending_count() == 1

    @pytest.mark.asyncio
    async def test_retries_back_off_then_exhaust(
        self, webhooks: WebhookDispatcher, receiver: Receiver, session_factory: Any, clock: Any
    ) -> None:
        receiver.responder = lambda request: httpx.Response(500)
        await webhooks.register_endpoint(
            WORKSPACE,
            "https://a.example/hooks",
            max_retries=2,
            retry_delay_ms=1000,
            backoff_multiplier=2.0,
        )
        queue = WebhookRetryQueue(session_factory, webhooks, clock=clock)

        [delivery_id] = await webhooks.publish(WORKSPACE, "payment.completed", {"id": "sess_1"})
        first = await delivery(session_factory, delivery_id)
        assert first.status == "failed"
        assert first.next_attempt_at == clock.now + timedelta(seconds=1)

        assert await queue.process_batch() == 0
        assert len(receiver.requests) == 1

        clock.advance(seconds=1)
        await queue.process_batch()
        second = await delivery(session_factory, delivery_id)
        assert second.attempts == 2
        assert second.status == "failed"

        clock.advance(seconds=1)
        await queue.process_batch()
        assert len(receiver.requests) == 2

        clock.advance(seconds=1)
        await queue.process_batch()
        final = await delivery(session_factory, delivery_id)
        assert final.attempts == 3
        assert final.status == "exhausted"
        assert final.next_attempt_at is None
        assert final.last_status_code == 500

        clock.advance(hours=1)
        await queue.process_batch()
        assert len(receiver.requests) == 3
        assert await queue.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_retry_resends_the_same_signed_envelope(
        self, webhooks: WebhookDispatcher, receiver: Receiver, session_factory: Any, clock: Any
    ) -> None:
        responses = iter([httpx.Response(502), httpx.Response(200)])
        receiver.responder = lambda request: next(responses)
        await webhooks.register_endpoint(WORKSPACE, "https://a.example/hooks", retry_delay_ms=500)
        queue = WebhookRetryQueue(session_factory, webhooks, clock=clock)

        [delivery_id] = await webhooks.publish(WORKSPACE, "payment.completed", {"id": "sess_1"})
        clock.advance(seconds=1)
        delivered = await queue.process_batch()

        assert delivered == 1
        assert (await delivery(session_factory, delivery_id)).status == "delivered"
        assert receiver.requests[0].content == receiver.requests[1].content
