"""
Buffered writer for delivery records.

Producers call ``record()``, which only appends to an in-memory list. A
background worker flushes the buffer to the store once ``flush_interval``
seconds have passed since the last flush, and a flush is scheduled as soon
as the buffer reaches ``batch_size`` records. A failed flush puts the batch
back at the front of the buffer, and size-triggered flushes pause until a
later flush succeeds.
"""

import asyncio
import logging
from typing import List, Optional, Set

from wamux.models import DeliveryRecord
from wamux.store.base import Store

logger = logging.getLogger(__name__)


class LogBatcher:
    """Batches DeliveryRecords and writes them to the store."""

    def __init__(self, store: Store, batch_size: int = 10, flush_interval: float = 5.0):
        """
        Args:
            store: Backend receiving the batches
            batch_size: Number of buffered records that triggers a flush
            flush_interval: Maximum seconds between flushes
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.store = store
        self.batch_size = batch_size
        self.flush_interval = flush_interval

        self._buffer: List[DeliveryRecord] = []
        self._lock = asyncio.Lock()
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None
        self._pending_flushes: Set[asyncio.Task] = set()
        self._last_flush: Optional[float] = None
        # Set after a failed flush; retries then wait for the interval worker.
        self._store_failing = False

        self.flushed_count = 0
        self.failed_flushes = 0

    @property
    def pending(self) -> int:
        """Number of records waiting to be flushed."""
        return len(self._buffer)

    def record(self, record: DeliveryRecord) -> None:
        """
        Buffer a record. Never blocks and never raises for store problems.

        Must be called from the event loop thread.
        """
        self._buffer.append(record)
        if self._store_failing or self._pending_flushes:
            return
        if len(self._buffer) >= self.batch_size:
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self.flush())
        except RuntimeError:
            # No running loop; the next flush() call picks the records up.
            return
        self._pending_flushes.add(task)
        task.add_done_callback(self._pending_flushes.discard)

    async def flush(self) -> int:
        """
        Write every buffered record to the store.

        Returns:
            Number of records written (0 if the buffer was empty or the write failed)
        """
        async with self._lock:
            batch, self._buffer = self._buffer, []
            self._last_flush = asyncio.get_running_loop().time()
            if not batch:
                return 0

            try:
                await self.store.insert_delivery_records(batch)
            except Exception as e:
                # Oldest records go first in the next attempt.
                self._buffer[:0] = batch
                self.failed_flushes += 1
                self._store_failing = True
                logger.error(f"Failed to flush {len(batch)} delivery records: {e}")
                return 0

            self._store_failing = False
            self.flushed_count += len(batch)
            logger.debug(f"Flushed {len(batch)} delivery records")

        # Records that arrived while we were writing may already fill a batch.
        if len(self._buffer) >= self.batch_size and len(self._pending_flushes) <= 1:
            self._schedule_flush()
        return len(batch)

    async def start(self) -> None:
        """Start the time-based flush worker."""
        if self._running:
            return
        self._running = True
        self._last_flush = asyncio.get_running_loop().time()
        self._worker_task = asyncio.create_task(self._worker())
        logger.info(
            f"Log batcher started (batch_size={self.batch_size}, flush_interval={self.flush_interval}s)"
        )

    async def _worker(self) -> None:
        """Flush whatever is buffered each time the interval elapses."""
        loop = asyncio.get_running_loop()
        while self._running:
            elapsed = loop.time() - (self._last_flush or loop.time())
            await asyncio.sleep(max(0.01, self.flush_interval - elapsed))
            if loop.time() - (self._last_flush or 0.0) >= self.flush_interval:
                try:
                    await self.flush()
                except Exception as e:
                    logger.error(f"Error in log batcher worker: {e}")

    async def stop(self) -> None:
        """Stop the worker and flush what is left."""
        self._running = False
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        if self._pending_flushes:
            await asyncio.gather(*list(self._pending_flushes), return_exceptions=True)

        await self.flush()
        if self._buffer:
            logger.warning(f"Log batcher stopped with {len(self._buffer)} unflushed records")
