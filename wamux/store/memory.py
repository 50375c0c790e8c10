"""
In-memory store backend.

Used when no database is configured and throughout the test suite. It can
emulate a fixed schema for the delivery log (``known_columns``) so that the
unknown-column retry path behaves the same as against PostgreSQL.
"""

import asyncio
import logging
from dataclasses import fields, replace
from typing import Any, Dict, List, Optional, Sequence, Set

from wamux.errors import UnknownColumnError
from wamux.models import Account, AccountStatus, Webhook, DeliveryRecord, utcnow
from wamux.store.base import Store, strip_unknown_column

logger = logging.getLogger(__name__)

ACCOUNT_COLUMNS = {f.name for f in fields(Account)}
WEBHOOK_COLUMNS = {f.name for f in fields(Webhook)}


class MemoryStore(Store):
    """Dict-backed store."""

    def __init__(self, known_columns: Optional[Set[str]] = None):
        """
        Args:
            known_columns: If set, delivery-record inserts that contain any
                other field are rejected with UnknownColumnError.
        """
        self.accounts: Dict[str, Account] = {}
        self.webhooks: Dict[str, Webhook] = {}
        self.records: List[Dict[str, Any]] = []
        self.known_columns = known_columns
        self._lock = asyncio.Lock()

    async def create_account(self, account: Account) -> Account:
        async with self._lock:
            self.accounts[account.id] = replace(account)
            return replace(account)

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self.accounts.get(account_id)
        return replace(account) if account else None

    async def list_accounts(self) -> List[Account]:
        return sorted(
            (replace(a) for a in self.accounts.values()),
            key=lambda a: a.created_at,
            reverse=True,
        )

    async def update_account(self, account_id: str, updates: Dict[str, Any]) -> Optional[Account]:
        async with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            changes = {k: v for k, v in updates.items() if k in ACCOUNT_COLUMNS}
            if "status" in changes:
                changes["status"] = AccountStatus(changes["status"])
            changes["updated_at"] = utcnow()
            updated = replace(account, **changes)
            self.accounts[account_id] = updated
            return replace(updated)

    async def delete_account(self, account_id: str) -> bool:
        async with self._lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            for webhook_id in [w.id for w in self.webhooks.values() if w.account_id == account_id]:
                del self.webhooks[webhook_id]
            return True

    async def create_webhook(self, webhook: Webhook) -> Webhook:
        async with self._lock:
            self.webhooks[webhook.id] = replace(webhook)
            return replace(webhook)

    async def get_webhook(self, webhook_id: str) -> Optional[Webhook]:
        webhook = self.webhooks.get(webhook_id)
        return replace(webhook) if webhook else None

    async def list_webhooks(self, account_id: str) -> List[Webhook]:
        return sorted(
            (replace(w) for w in self.webhooks.values() if w.account_id == account_id),
            key=lambda w: w.created_at,
            reverse=True,
        )

    async def update_webhook(self, webhook_id: str, updates: Dict[str, Any]) -> Optional[Webhook]:
        async with self._lock:
            webhook = self.webhooks.get(webhook_id)
            if webhook is None:
                return None
            changes = {k: v for k, v in updates.items() if k in WEBHOOK_COLUMNS}
            changes["updated_at"] = utcnow()
            updated = replace(webhook, **changes)
            self.webhooks[webhook_id] = updated
            return replace(updated)

    async def delete_webhook(self, webhook_id: str) -> bool:
        async with self._lock:
            if self.webhooks.pop(webhook_id, None) is None:
                return False
            for row in self.records:
                if row.get("webhook_id") == webhook_id:
                    row["webhook_id"] = None
            return True

    def _check_columns(self, rows: Sequence[Dict[str, Any]]) -> None:
        if self.known_columns is None:
            return
        for row in rows:
            for column in row:
                if column not in self.known_columns:
                    raise UnknownColumnError(column)

    async def insert_delivery_records(self, records: Sequence[DeliveryRecord]) -> None:
        rows = [r.to_row() for r in records]
        # Each retry removes one column, so this terminates.
        while True:
            try:
                self._check_columns(rows)
                break
            except UnknownColumnError as e:
                logger.warning(f"Retrying log insert without unknown column: {e.column}")
                rows = strip_unknown_column(rows, e.column)
        async with self._lock:
            self.records.extend(rows)

    async def list_delivery_records(self, account_id: str, limit: int = 100) -> List[DeliveryRecord]:
        rows = [r for r in self.records if r.get("account_id") == account_id]
        rows.sort(key=lambda r: r.get("created_at") or utcnow(), reverse=True)
        return [DeliveryRecord.from_row(r) for r in rows[:limit]]
