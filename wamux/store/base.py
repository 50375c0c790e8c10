"""
Abstract interface for persistence backends.

The store keeps accounts, webhooks and the delivery log. It supports:
- Account CRUD
- Webhook CRUD
- Batch append of delivery records
- Read-back of recent records and per-account counters

Every method raises PersistenceUnavailable when the backend fails.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from wamux.models import Account, Webhook, DeliveryRecord


def strip_unknown_column(rows: Sequence[Dict[str, Any]], column: str) -> List[Dict[str, Any]]:
    """
    Return copies of ``rows`` with ``column`` removed.

    Used to retry a batch insert that the schema rejected because of a field
    it does not know.
    """
    stripped = []
    for row in rows:
        copy = dict(row)
        copy.pop(column, None)
        stripped.append(copy)
    return stripped


class Store(ABC):
    """Abstract interface for store backends."""

    async def connect(self) -> None:
        """
        Establish connection to the backend.

        Raises:
            PersistenceUnavailable: If connection fails
        """
        pass

    async def close(self) -> None:
        """Close connection to the backend."""
        pass

    # Accounts

    @abstractmethod
    async def create_account(self, account: Account) -> Account:
        """Persist a new account and return the stored version."""
        pass

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        """Return the account, or None if it does not exist."""
        pass

    @abstractmethod
    async def list_accounts(self) -> List[Account]:
        """Return all accounts, newest first."""
        pass

    @abstractmethod
    async def update_account(self, account_id: str, updates: Dict[str, Any]) -> Optional[Account]:
        """
        Apply a partial update.

        Args:
            account_id: Account to update
            updates: Column -> value. ``updated_at`` is set by the backend.

        Returns:
            The updated account, or None if it does not exist
        """
        pass

    @abstractmethod
    async def delete_account(self, account_id: str) -> bool:
        """Delete the account. Returns False if it did not exist."""
        pass

    # Webhooks

    @abstractmethod
    async def create_webhook(self, webhook: Webhook) -> Webhook:
        pass

    @abstractmethod
    async def get_webhook(self, webhook_id: str) -> Optional[Webhook]:
        pass

    @abstractmethod
    async def list_webhooks(self, account_id: str) -> List[Webhook]:
        """Return the account's webhooks, newest first."""
        pass

    @abstractmethod
    async def update_webhook(self, webhook_id: str, updates: Dict[str, Any]) -> Optional[Webhook]:
        pass

    @abstractmethod
    async def delete_webhook(self, webhook_id: str) -> bool:
        pass

    # Delivery records

    @abstractmethod
    async def insert_delivery_records(self, records: Sequence[DeliveryRecord]) -> None:
        """
        Insert a batch of delivery records.

        Implementations must tolerate a schema that rejects unknown fields by
        retrying with the offending field stripped.
        """
        pass

    @abstractmethod
    async def list_delivery_records(self, account_id: str, limit: int = 100) -> List[DeliveryRecord]:
        """Return the most recent records for an account."""
        pass

    async def delivery_stats(self, account_id: str) -> Dict[str, int]:
        """
        Count records for an account by direction and status.

        The default implementation reads records back; backends may override
        it with an aggregate query.
        """
        records = await self.list_delivery_records(account_id, limit=1_000_000)
        return {
            "total": len(records),
            "incoming": sum(1 for r in records if r.direction.value == "incoming"),
            "outgoing": sum(1 for r in records if r.direction.value == "outgoing"),
            "success": sum(1 for r in records if r.status.value == "success"),
            "failed": sum(1 for r in records if r.status.value == "failed"),
        }

    async def health_check(self) -> bool:
        """Return True if the backend is reachable."""
        return True
