"""
Unit tests for the per-account outbound queue.
"""

import asyncio
import base64
from unittest.mock import MagicMock

import httpx
import pytest

from wamux.errors import (
    AccountNotFound,
    InvalidMedia,
    NotReady,
    QueueFull,
    SessionUnavailable,
    TransportSendError,
)
from wamux.log_batcher import LogBatcher
from wamux.models import DeliveryStatus, Direction, MediaPayload
from wamux.outbound_queue import OutboundQueue, default_media_filename
from wamux.phone import PhoneNumberNormalizer


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def recorded(batcher):
    return [call.args[0] for call in batcher.record.call_args_list]


@pytest.fixture
def batcher():
    return MagicMock(spec=LogBatcher)


@pytest.fixture
def queue(registry, batcher):
    return OutboundQueue(registry, PhoneNumberNormalizer(), log_batcher=batcher)


class TestEnqueue:
    """Tests for text sends."""

    @pytest.mark.asyncio
    async def test_send_success(self, queue, batcher, make_ready_account):
        account, client = await make_ready_account()

        result = await queue.enqueue(account.id, "9876543210", "hello")

        assert result.success is True
        assert result.message_id == "msg-1"
        assert client.sent[0]["destination"] == "919876543210@c.us"
        assert client.sent[0]["payload"] == "hello"
        assert queue.depth(account.id) == 0

        [record] = recorded(batcher)
        assert record.direction == Direction.OUTGOING
        assert record.status == DeliveryStatus.SUCCESS
        assert record.message_id == "msg-1"
        assert record.message == "hello"
        assert record.type == "text"

    @pytest.mark.asyncio
    async def test_unknown_account(self, queue, batcher):
        with pytest.raises(AccountNotFound):
            await queue.enqueue("missing", "9876543210", "hello")
        batcher.record.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_ready_never_reaches_transport(self, queue, batcher, registry, transport_factory):
        account = await registry.create_account("pending")

        with pytest.raises(NotReady) as exc_info:
            await queue.enqueue(account.id, "9876543210", "hello")

        assert exc_info.value.status == "initializing"
        assert transport_factory.clients[account.id].sent == []
        [record] = recorded(batcher)
        assert record.status == DeliveryStatus.FAILED
        assert "not ready" in record.error_message

    @pytest.mark.asyncio
    async def test_closed_session(self, queue, make_ready_account):
        account, client = await make_ready_account()
        client.usable = False

        with pytest.raises(SessionUnavailable):
            await queue.enqueue(account.id, "9876543210", "hello")
        assert client.sent == []

    @pytest.mark.asyncio
    async def test_destination_without_digits(self, queue, make_ready_account):
        account, client = await make_ready_account()

        with pytest.raises(ValueError):
            await queue.enqueue(account.id, "not a number", "hello")
        assert client.sent == []

    @pytest.mark.asyncio
    async def test_transport_failure(self, queue, batcher, make_ready_account):
        account, client = await make_ready_account()
        cause = RuntimeError("Evaluation failed: page crashed")
        client.send_error = cause

        with pytest.raises(TransportSendError) as exc_info:
            await queue.enqueue(account.id, "9876543210", "hello")

        assert exc_info.value.__cause__ is cause
        assert queue.depth(account.id) == 0
        [record] = recorded(batcher)
        assert record.status == DeliveryStatus.FAILED
        assert record.error_message == "Evaluation failed: page crashed"
        assert record.recipient == "919876543210@c.us"


class TestCapacity:
    """Tests for the in-flight cap."""

    @pytest.mark.asyncio
    async def test_full_queue_rejects_without_sending(self, registry, make_ready_account):
        queue = OutboundQueue(registry, PhoneNumberNormalizer(), cap=2)
        account, client = await make_ready_account()
        client.send_gate = asyncio.Event()

        in_flight = [
            asyncio.create_task(queue.enqueue(account.id, "9876543210", f"m{i}"))
            for i in range(2)
        ]
        await wait_until(lambda: len(client.sent) == 2)
        assert queue.depth(account.id) == 2

        with pytest.raises(QueueFull) as exc_info:
            await queue.enqueue(account.id, "9876543210", "overflow")
        assert exc_info.value.depth == 2
        assert exc_info.value.cap == 2
        assert len(client.sent) == 2

        client.send_gate.set()
        results = await asyncio.gather(*in_flight)
        assert all(r.success for r in results)
        assert queue.depth(account.id) == 0

        result = await queue.enqueue(account.id, "9876543210", "after")
        assert result.success is True

    @pytest.mark.asyncio
    async def test_queues_are_per_account(self, registry, make_ready_account):
        queue = OutboundQueue(registry, PhoneNumberNormalizer(), cap=1)
        busy, busy_client = await make_ready_account("busy")
        idle, idle_client = await make_ready_account("idle")
        busy_client.send_gate = asyncio.Event()

        pending = asyncio.create_task(queue.enqueue(busy.id, "9876543210", "slow"))
        await wait_until(lambda: queue.depth(busy.id) == 1)

        result = await queue.enqueue(idle.id, "9876543210", "fast")
        assert result.success is True

        busy_client.send_gate.set()
        await pending

    @pytest.mark.asyncio
    async def test_forget_drops_queue(self, queue, make_ready_account):
        account, client = await make_ready_account()
        client.send_gate = asyncio.Event()
        pending = asyncio.create_task(queue.enqueue(account.id, "9876543210", "hi"))
        await wait_until(lambda: queue.depth(account.id) == 1)

        queue.forget(account.id)
        assert queue.depth(account.id) == 0

        client.send_gate.set()
        assert (await pending).success is True

    def test_cap_must_be_positive(self, registry):
        with pytest.raises(ValueError):
            OutboundQueue(registry, PhoneNumberNormalizer(), cap=0)


class TestSendMedia:
    """Tests for media sends."""

    @pytest.mark.asyncio
    async def test_data_url_prefix_is_stripped(self, queue, batcher, make_ready_account):
        account, client = await make_ready_account()

        await queue.send_media(
            account.id, "9876543210", {"data": "data:image/png;base64,aGVsbG8="}, caption="pic"
        )

        sent = client.sent[0]
        payload = sent["payload"]
        assert isinstance(payload, MediaPayload)
        assert payload.data == "aGVsbG8="
        assert payload.mimetype == "image/png"
        assert payload.filename == "media.png"
        assert sent["options"] == {"caption": "pic"}

        [record] = recorded(batcher)
        assert record.type == "media"
        assert record.media == {
            "mimetype": "image/png", "filename": "media.png", "source": "base64", "size": 5,
        }

    @pytest.mark.asyncio
    async def test_mimetype_required(self, queue, make_ready_account):
        account, client = await make_ready_account()

        with pytest.raises(InvalidMedia):
            await queue.send_media(account.id, "9876543210", {"data": "aGVsbG8="})
        assert client.sent == []

    @pytest.mark.asyncio
    async def test_missing_data_and_url(self, queue, make_ready_account):
        account, _ = await make_ready_account()
        with pytest.raises(InvalidMedia):
            await queue.send_media(account.id, "9876543210", {"mimetype": "image/png"})

    @pytest.mark.asyncio
    async def test_invalid_base64(self, queue, make_ready_account):
        account, _ = await make_ready_account()
        with pytest.raises(InvalidMedia):
            await queue.send_media(
                account.id, "9876543210", {"data": "!!!not-base64", "mimetype": "image/png"}
            )

    @pytest.mark.asyncio
    async def test_size_limit(self, registry, make_ready_account):
        queue = OutboundQueue(registry, PhoneNumberNormalizer(), max_media_bytes=4)
        account, client = await make_ready_account()

        with pytest.raises(InvalidMedia) as exc_info:
            await queue.send_media(
                account.id, "9876543210", {"data": "aGVsbG8=", "mimetype": "text/plain"}
            )
        assert "too large" in str(exc_info.value)
        assert client.sent == []

    @pytest.mark.asyncio
    async def test_voice_note_takes_precedence_for_audio(self, queue, make_ready_account):
        account, client = await make_ready_account()

        await queue.send_media(
            account.id,
            "9876543210",
            {"data": "aGVsbG8=", "mimetype": "audio/ogg", "filename": "note.ogg"},
            options={"send_audio_as_voice": True, "send_media_as_document": True},
        )

        options = client.sent[0]["options"]
        assert options["send_audio_as_voice"] is True
        assert "send_media_as_document" not in options
        assert client.sent[0]["payload"].filename == "note.ogg"

    @pytest.mark.asyncio
    async def test_voice_option_ignored_for_images(self, queue, make_ready_account):
        account, client = await make_ready_account()

        await queue.send_media(
            account.id,
            "9876543210",
            {"data": "aGVsbG8=", "mimetype": "image/jpeg"},
            options={"send_audio_as_voice": True, "send_media_as_document": True},
        )

        assert client.sent[0]["options"] == {"caption": "", "send_media_as_document": True}

    @pytest.mark.asyncio
    async def test_fetch_by_url(self, registry, batcher, make_ready_account):
        def handler(request):
            return httpx.Response(
                200, content=b"%PDF-1.4", headers={"content-type": "application/pdf; charset=binary"}
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            queue = OutboundQueue(
                registry, PhoneNumberNormalizer(), log_batcher=batcher, http_client=http_client
            )
            account, client = await make_ready_account()

            await queue.send_media(
                account.id, "9876543210", {"url": "https://files.example.com/docs/report.pdf"}
            )

        payload = client.sent[0]["payload"]
        assert payload.mimetype == "application/pdf"
        assert payload.filename == "report.pdf"
        assert base64.b64decode(payload.data) == b"%PDF-1.4"
        assert recorded(batcher)[0].media["source"] == "url"

    @pytest.mark.asyncio
    async def test_fetch_failure(self, registry, make_ready_account):
        def handler(request):
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            queue = OutboundQueue(registry, PhoneNumberNormalizer(), http_client=http_client)
            account, client = await make_ready_account()

            with pytest.raises(InvalidMedia):
                await queue.send_media(
                    account.id, "9876543210", {"url": "https://files.example.com/missing.png"}
                )
        assert client.sent == []

    @pytest.mark.asyncio
    async def test_non_http_url_rejected(self, queue, make_ready_account):
        account, _ = await make_ready_account()
        with pytest.raises(InvalidMedia):
            await queue.send_media(account.id, "9876543210", {"url": "file:///etc/passwd"})

    @pytest.mark.asyncio
    async def test_not_ready_rejects_before_fetch(self, registry, batcher):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, content=b"x")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            queue = OutboundQueue(
                registry, PhoneNumberNormalizer(), log_batcher=batcher, http_client=http_client
            )
            account = await registry.create_account("pending")

            with pytest.raises(NotReady):
                await queue.send_media(
                    account.id, "9876543210", {"url": "https://files.example.com/a.png"}
                )

        assert calls == []
        [record] = recorded(batcher)
        assert record.status == DeliveryStatus.FAILED
        assert record.media == {"source": "url"}


@pytest.mark.parametrize("mimetype,expected", [
    ("image/png", "media.png"),
    ("application/pdf", "media.pdf"),
    ("weird", "media.bin"),
])
def test_default_media_filename(mimetype, expected):
    assert default_media_filename(mimetype) == expected
