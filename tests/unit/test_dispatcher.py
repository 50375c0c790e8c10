"""
Unit tests for webhook fan-out.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from wamux.caches import WebhookListCache
from wamux.dispatcher import (
    ACCOUNT_HEADER,
    SECRET_HEADER,
    WebhookDispatcher,
    is_automation_target,
    optimize_payload,
)
from wamux.errors import PersistenceUnavailable
from wamux.log_batcher import LogBatcher
from wamux.models import DeliveryStatus, Direction, InboundMessage, Webhook


def event_payload():
    message = InboundMessage(
        message_id="m1",
        sender="15550001@c.us",
        recipient="15551234@c.us",
        body="hello",
        timestamp=1700000000,
        chat_id="15550001@c.us",
    )
    return message.to_event_payload("a1")


class Recorder:
    """MockTransport handler that remembers requests and answers per host."""

    def __init__(self, responses=None):
        self.requests = []
        self.responses = responses or {}

    def __call__(self, request):
        self.requests.append(request)
        outcome = self.responses.get(request.url.host, 200)
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome)

    def for_host(self, host):
        return [r for r in self.requests if r.url.host == host]


async def add_webhook(store, webhook_id, url, secret=None, is_active=True):
    await store.create_webhook(
        Webhook(id=webhook_id, account_id="a1", url=url, secret=secret, is_active=is_active)
    )


@pytest.fixture
def batcher():
    return MagicMock(spec=LogBatcher)


def make_dispatcher(store, batcher, handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    dispatcher = WebhookDispatcher(
        WebhookListCache(store), log_batcher=batcher, http_client=client
    )
    return dispatcher, client


class TestHelpers:
    """Tests for target detection and payload reduction."""

    @pytest.mark.parametrize("url,expected", [
        ("https://n8n.example.com/webhook/abc", True),
        ("https://automation.example.com/webhook-test/N8N", True),
        ("https://nodemation.internal/hook", True),
        ("https://hooks.example.com/wamux", False),
        ("", False),
    ])
    def test_is_automation_target(self, url, expected):
        assert is_automation_target(url) is expected

    def test_optimize_payload(self):
        reduced = optimize_payload(event_payload())

        assert reduced["optimized"] is True
        assert reduced["message"] == "hello"
        assert reduced["direction"] == "incoming"
        assert "message_id" not in reduced
        assert "created_at" not in reduced
        assert "group_name" not in reduced


class TestDispatch:
    """Tests for parallel delivery."""

    @pytest.mark.asyncio
    async def test_one_timeout_does_not_affect_others(self, store, batcher):
        await add_webhook(store, "w1", "https://one.example.com/hook")
        await add_webhook(store, "w2", "https://two.example.com/hook")
        await add_webhook(store, "w3", "https://slow.example.com/hook")
        handler = Recorder({"slow.example.com": httpx.ReadTimeout("timed out")})
        dispatcher, client = make_dispatcher(store, batcher, handler)

        async with client:
            records = await dispatcher.dispatch("a1", event_payload())

        by_webhook = {r.webhook_id: r for r in records}
        assert by_webhook["w1"].status == DeliveryStatus.SUCCESS
        assert by_webhook["w2"].status == DeliveryStatus.SUCCESS
        assert by_webhook["w3"].status == DeliveryStatus.FAILED
        assert by_webhook["w3"].error_message == "Timed out after 10.0s"
        assert batcher.record.call_count == 3
        assert all(r.direction == Direction.WEBHOOK for r in records)

    @pytest.mark.asyncio
    async def test_automation_target_gets_reduced_payload(self, store, batcher):
        await add_webhook(store, "w1", "https://n8n.example.com/webhook/x", secret="sek")
        await add_webhook(store, "w2", "https://hooks.example.com/full", secret="other")
        handler = Recorder()
        dispatcher, client = make_dispatcher(store, batcher, handler)

        async with client:
            await dispatcher.dispatch("a1", event_payload())

        [automation] = handler.for_host("n8n.example.com")
        [regular] = handler.for_host("hooks.example.com")
        reduced = json.loads(automation.content)
        full = json.loads(regular.content)

        assert reduced["optimized"] is True
        assert "message_id" not in reduced
        assert full["message_id"] == "m1"
        assert "optimized" not in full

        assert automation.headers[SECRET_HEADER] == "sek"
        assert automation.headers[ACCOUNT_HEADER] == "a1"
        assert regular.headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_timeouts_depend_on_target(self, store, batcher):
        dispatcher = WebhookDispatcher(WebhookListCache(store), automation_timeout=5, default_timeout=10)

        _, automation_timeout = dispatcher.policy_for(
            Webhook(id="w", account_id="a1", url="https://n8n.example.com/webhook"), {}
        )
        _, default_timeout = dispatcher.policy_for(
            Webhook(id="w", account_id="a1", url="https://hooks.example.com"), {}
        )

        assert automation_timeout == 5
        assert default_timeout == 10

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self, store, batcher):
        await add_webhook(store, "w1", "https://hooks.example.com/hook")
        handler = Recorder({"hooks.example.com": 500})
        dispatcher, client = make_dispatcher(store, batcher, handler)

        async with client:
            [record] = await dispatcher.dispatch("a1", event_payload())

        assert record.status == DeliveryStatus.FAILED
        assert record.response_status == 500
        assert record.error_message == "HTTP 500"

    @pytest.mark.asyncio
    async def test_connection_error_is_recorded(self, store, batcher):
        await add_webhook(store, "w1", "https://down.example.com/hook")
        handler = Recorder({"down.example.com": httpx.ConnectError("connection refused")})
        dispatcher, client = make_dispatcher(store, batcher, handler)

        async with client:
            [record] = await dispatcher.dispatch("a1", event_payload())

        assert record.status == DeliveryStatus.FAILED
        assert record.error_message == "connection refused"

    @pytest.mark.asyncio
    async def test_inactive_webhooks_are_skipped(self, store, batcher):
        await add_webhook(store, "w1", "https://hooks.example.com/on")
        await add_webhook(store, "w2", "https://off.example.com/off", is_active=False)
        handler = Recorder()
        dispatcher, client = make_dispatcher(store, batcher, handler)

        async with client:
            records = await dispatcher.dispatch("a1", event_payload())

        assert [r.webhook_id for r in records] == ["w1"]
        assert handler.for_host("off.example.com") == []

    @pytest.mark.asyncio
    async def test_no_webhooks(self, store, batcher):
        handler = Recorder()
        dispatcher, client = make_dispatcher(store, batcher, handler)

        async with client:
            assert await dispatcher.dispatch("a1", event_payload()) == []
        assert handler.requests == []
        batcher.record.assert_not_called()

    @pytest.mark.asyncio
    async def test_store_failure_skips_fan_out(self, store, batcher):
        store.list_webhooks = AsyncMock(side_effect=PersistenceUnavailable("list_webhooks"))
        handler = Recorder()
        dispatcher, client = make_dispatcher(store, batcher, handler)

        async with client:
            assert await dispatcher.dispatch("a1", event_payload()) == []
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_owned_client_lifecycle(self, store):
        dispatcher = WebhookDispatcher(WebhookListCache(store))
        await dispatcher.start()
        assert dispatcher._client is not None

        await dispatcher.close()
        assert dispatcher._client is None
