"""
Unit tests for LogBatcher.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from wamux.errors import PersistenceUnavailable
from wamux.log_batcher import LogBatcher
from wamux.models import DeliveryRecord, Direction


def make_record(n):
    return DeliveryRecord(account_id="a1", direction=Direction.INCOMING, message=f"m{n}")


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestLogBatcher:
    """Tests for size and time based flushing."""

    @pytest.mark.asyncio
    async def test_flush_at_batch_size(self, store):
        batcher = LogBatcher(store, batch_size=10, flush_interval=60)

        for n in range(9):
            batcher.record(make_record(n))
        await asyncio.sleep(0.01)
        assert store.records == []

        batcher.record(make_record(9))
        await wait_until(lambda: len(store.records) == 10)

        assert batcher.pending == 0
        assert batcher.flushed_count == 10
        assert [r["message"] for r in store.records] == [f"m{n}" for n in range(10)]

    @pytest.mark.asyncio
    async def test_flush_on_interval(self, store):
        batcher = LogBatcher(store, batch_size=10, flush_interval=0.05)
        await batcher.start()
        try:
            batcher.record(make_record(1))
            await wait_until(lambda: len(store.records) == 1)
        finally:
            await batcher.stop()

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_records_in_order(self, store):
        batcher = LogBatcher(store, batch_size=100)
        original = store.insert_delivery_records
        store.insert_delivery_records = AsyncMock(side_effect=PersistenceUnavailable("insert"))

        batcher.record(make_record(1))
        batcher.record(make_record(2))
        assert await batcher.flush() == 0
        assert batcher.failed_flushes == 1
        assert batcher.pending == 2

        batcher.record(make_record(3))
        store.insert_delivery_records = original
        assert await batcher.flush() == 3
        assert [r["message"] for r in store.records] == ["m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_records_do_not_retry_a_failing_store(self, store):
        batcher = LogBatcher(store, batch_size=2, flush_interval=60)
        failing = AsyncMock(side_effect=PersistenceUnavailable("insert"))
        store.insert_delivery_records = failing

        batcher.record(make_record(1))
        batcher.record(make_record(2))
        await wait_until(lambda: batcher.failed_flushes == 1)

        for n in range(3, 30):
            batcher.record(make_record(n))
        await asyncio.sleep(0.05)

        assert failing.await_count == 1
        assert batcher.pending == 29

    @pytest.mark.asyncio
    async def test_size_flushes_resume_after_recovery(self, store):
        batcher = LogBatcher(store, batch_size=2, flush_interval=60)
        original = store.insert_delivery_records
        store.insert_delivery_records = AsyncMock(side_effect=PersistenceUnavailable("insert"))
        batcher.record(make_record(1))
        batcher.record(make_record(2))
        await wait_until(lambda: batcher.failed_flushes == 1)

        store.insert_delivery_records = original
        assert await batcher.flush() == 2

        batcher.record(make_record(3))
        batcher.record(make_record(4))
        await wait_until(lambda: len(store.records) == 4)

    @pytest.mark.asyncio
    async def test_empty_flush(self, store):
        batcher = LogBatcher(store)
        assert await batcher.flush() == 0

    @pytest.mark.asyncio
    async def test_stop_flushes_remaining(self, store):
        batcher = LogBatcher(store, batch_size=10, flush_interval=60)
        await batcher.start()
        batcher.record(make_record(1))
        batcher.record(make_record(2))

        await batcher.stop()

        assert len(store.records) == 2
        assert batcher.pending == 0

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, store):
        batcher = LogBatcher(store, flush_interval=60)
        await batcher.start()
        worker = batcher._worker_task
        await batcher.start()
        assert batcher._worker_task is worker
        await batcher.stop()

    @pytest.mark.asyncio
    async def test_unknown_column_is_dropped_on_insert(self):
        from wamux.store.memory import MemoryStore

        store = MemoryStore(known_columns={"account_id", "direction", "status", "message", "created_at"})
        batcher = LogBatcher(store)
        batcher.record(DeliveryRecord(
            account_id="a1", direction=Direction.INCOMING, message="hi", chat_id="c1",
        ))

        assert await batcher.flush() == 1
        assert "chat_id" not in store.records[0]
        assert store.records[0]["message"] == "hi"

    def test_batch_size_must_be_positive(self, store):
        with pytest.raises(ValueError):
            LogBatcher(store, batch_size=0)
