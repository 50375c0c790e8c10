"""
Read-through caches in front of the store's webhook table.

WebhookListCache keeps each account's webhook list for a short time so that
fan-out does not hit the store on every inbound message.

WebhookSecretCache remembers whether a presented (account, secret) pair is
valid, so externally triggered reply requests skip the store round trip.
Both are invalidated per account whenever that account's webhooks change.
"""

import asyncio
import hmac
import logging
import time
from collections import OrderedDict
from typing import Callable, List, Optional, Tuple

from wamux.models import SecretCacheEntry, Webhook
from wamux.store.base import Store

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class WebhookListCache:
    """
    Per-account cache of webhook lists with a fixed TTL.

    Account ids reach this cache from unauthenticated requests, so it holds
    at most ``max_entries`` lists and evicts the least recently stored one.
    """

    def __init__(
        self,
        store: Store,
        ttl_seconds: float = 60.0,
        max_entries: int = 10000,
        clock: Clock = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[List[Webhook], float]]" = OrderedDict()
        # Bumped on every invalidation so a lookup that raced with a mutation
        # does not write its stale result back.
        self._version = 0

    async def get(self, account_id: str) -> List[Webhook]:
        """
        Return the account's webhooks, reading through to the store on miss.

        Raises:
            PersistenceUnavailable: If the store read fails
        """
        entry = self._entries.get(account_id)
        now = self._clock()
        if entry is not None:
            if entry[1] > now:
                return list(entry[0])
            self._entries.pop(account_id, None)

        version = self._version
        webhooks = await self.store.list_webhooks(account_id)
        if self._version == version:
            self._entries.pop(account_id, None)
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[account_id] = (list(webhooks), self._clock() + self.ttl_seconds)
        return list(webhooks)

    def invalidate(self, account_id: str) -> None:
        self._entries.pop(account_id, None)
        self._version += 1

    def clear(self) -> None:
        self._entries.clear()
        self._version += 1

    def __len__(self) -> int:
        return len(self._entries)


class WebhookSecretCache:
    """
    Time-bounded positive/negative cache of webhook secret checks.

    Keys are ``(account_id, presented_secret)``. Entries expire after
    ``ttl_seconds``, are dropped for an account as soon as its webhooks
    change, and the whole cache is cleared every ``clear_interval`` seconds.
    The cache never holds more than ``max_entries`` entries; the oldest is
    evicted first, so invalid guesses cannot grow it without bound.
    """

    def __init__(
        self,
        webhooks: WebhookListCache,
        ttl_seconds: float = 300.0,
        clear_interval: float = 3600.0,
        max_entries: int = 10000,
        clock: Clock = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self.webhooks = webhooks
        self.ttl_seconds = ttl_seconds
        self.clear_interval = clear_interval
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Tuple[str, str], SecretCacheEntry]" = OrderedDict()
        self._version = 0
        self._clear_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the periodic full clear."""
        if self._clear_task is None or self._clear_task.done():
            self._clear_task = asyncio.create_task(self._clear_loop())

    async def stop(self) -> None:
        if self._clear_task and not self._clear_task.done():
            self._clear_task.cancel()
            try:
                await self._clear_task
            except asyncio.CancelledError:
                pass
        self._clear_task = None

    async def _clear_loop(self) -> None:
        while True:
            await asyncio.sleep(self.clear_interval)
            size = len(self._entries)
            self.clear()
            self.webhooks.clear()
            logger.debug(f"Cleared webhook secret cache ({size} entries)")

    def lookup(self, account_id: str, secret: str) -> Optional[bool]:
        """Return the cached verdict, or None on miss or expiry."""
        key = (account_id, secret)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry.valid

    def _store(self, account_id: str, secret: str, valid: bool) -> None:
        key = (account_id, secret)
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = SecretCacheEntry(
            account_id=account_id,
            secret=secret,
            valid=valid,
            expires_at=self._clock() + self.ttl_seconds,
        )

    async def validate(self, account_id: str, secret: str) -> bool:
        """
        Check whether ``secret`` belongs to an active webhook of the account.

        Raises:
            PersistenceUnavailable: If the store read fails on a cache miss
        """
        if not account_id or not secret:
            return False

        cached = self.lookup(account_id, secret)
        if cached is not None:
            return cached

        version = self._version
        webhooks = await self.webhooks.get(account_id)
        valid = any(
            w.is_active and w.secret and hmac.compare_digest(w.secret, secret)
            for w in webhooks
        )
        # Skip caching if any webhooks changed while we were reading.
        if self._version == version:
            self._store(account_id, secret, valid)
        return valid

    def invalidate_account(self, account_id: str) -> int:
        """
        Drop every cached verdict for the account.

        Returns:
            Number of entries removed
        """
        self._version += 1
        keys = [key for key in self._entries if key[0] == account_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
