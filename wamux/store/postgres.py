"""
PostgreSQL store backend built on an asyncpg connection pool.

Tables are created on connect if they do not exist. The delivery log insert
tolerates schema drift: when PostgreSQL rejects a column the batch is retried
with that column stripped from every row.
"""

import functools
import json
import logging
import re
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from wamux.errors import PersistenceUnavailable
from wamux.models import Account, AccountStatus, Webhook, DeliveryRecord, utcnow
from wamux.store.base import Store, strip_unknown_column

logger = logging.getLogger(__name__)

ACCOUNT_UPDATABLE = {"name", "description", "status", "phone_number", "qr_payload", "error_message"}
WEBHOOK_UPDATABLE = {"url", "secret", "is_active"}
JSON_COLUMNS = {"media"}

UNKNOWN_COLUMN_PATTERN = re.compile(r'column "([^"]+)"')
IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        description TEXT,
        status VARCHAR(50) NOT NULL DEFAULT 'initializing',
        phone_number VARCHAR(50),
        qr_payload TEXT,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhooks (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
        url VARCHAR(500) NOT NULL,
        secret VARCHAR(255),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_logs (
        id BIGSERIAL PRIMARY KEY,
        account_id TEXT NOT NULL,
        direction VARCHAR(50) NOT NULL,
        status VARCHAR(50) NOT NULL DEFAULT 'success',
        message_id VARCHAR(255),
        sender VARCHAR(255),
        recipient VARCHAR(255),
        message TEXT,
        timestamp BIGINT,
        type VARCHAR(50),
        chat_id VARCHAR(255),
        is_group BOOLEAN DEFAULT FALSE,
        group_name VARCHAR(255),
        media JSONB,
        webhook_id TEXT REFERENCES webhooks(id) ON DELETE SET NULL,
        webhook_url VARCHAR(500),
        response_status INTEGER,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_webhooks_account_id ON webhooks(account_id)",
    "CREATE INDEX IF NOT EXISTS idx_message_logs_account_id ON message_logs(account_id)",
    "CREATE INDEX IF NOT EXISTS idx_message_logs_created_at ON message_logs(created_at)",
]


def _quote_identifier(identifier: str) -> str:
    """Validate and double-quote a column name."""
    if not IDENTIFIER_PATTERN.match(identifier):
        raise ValueError(f"Invalid column name: '{identifier}'")
    return '"' + identifier.replace('"', '""') + '"'


def _persistence(operation: str):
    """Translate backend failures into PersistenceUnavailable."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except PersistenceUnavailable:
                raise
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
                logger.error(f"Store operation {operation} failed: {e}")
                raise PersistenceUnavailable(operation, e) from e

        return wrapper

    return decorator


def _row_to_dict(row: asyncpg.Record) -> Dict[str, Any]:
    data = dict(row)
    media = data.get("media")
    if isinstance(media, str):
        try:
            data["media"] = json.loads(media)
        except ValueError:
            data["media"] = None
    return data


class PostgresStore(Store):
    """Store backed by PostgreSQL."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10, command_timeout: float = 10.0):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.pool: Optional[asyncpg.Pool] = None

    @_persistence("connect")
    async def connect(self) -> None:
        self.pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
        )
        async with self.pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)
        logger.info("PostgreSQL store connected")

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise PersistenceUnavailable("pool", RuntimeError("store is not connected"))
        return self.pool

    async def health_check(self) -> bool:
        try:
            async with self._require_pool().acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return False

    # Accounts

    @_persistence("create_account")
    async def create_account(self, account: Account) -> Account:
        row = await self._require_pool().fetchrow(
            """
            INSERT INTO accounts (id, name, description, status, phone_number,
                                  qr_payload, error_message, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
            """,
            account.id,
            account.name,
            account.description,
            account.status.value,
            account.phone_number,
            account.qr_payload,
            account.error_message,
            account.created_at,
            account.updated_at,
        )
        return Account.from_dict(dict(row))

    @_persistence("get_account")
    async def get_account(self, account_id: str) -> Optional[Account]:
        row = await self._require_pool().fetchrow("SELECT * FROM accounts WHERE id = $1", account_id)
        return Account.from_dict(dict(row)) if row else None

    @_persistence("list_accounts")
    async def list_accounts(self) -> List[Account]:
        rows = await self._require_pool().fetch("SELECT * FROM accounts ORDER BY created_at DESC")
        return [Account.from_dict(dict(r)) for r in rows]

    def _build_update(self, updates: Dict[str, Any], allowed: set) -> Tuple[str, List[Any]]:
        assignments = []
        values: List[Any] = []
        for column, value in updates.items():
            if column not in allowed:
                continue
            if isinstance(value, AccountStatus):
                value = value.value
            values.append(value)
            assignments.append(f"{_quote_identifier(column)} = ${len(values)}")
        values.append(utcnow())
        assignments.append(f"updated_at = ${len(values)}")
        return ", ".join(assignments), values

    @_persistence("update_account")
    async def update_account(self, account_id: str, updates: Dict[str, Any]) -> Optional[Account]:
        assignments, values = self._build_update(updates, ACCOUNT_UPDATABLE)
        values.append(account_id)
        row = await self._require_pool().fetchrow(
            f"UPDATE accounts SET {assignments} WHERE id = ${len(values)} RETURNING *",
            *values,
        )
        return Account.from_dict(dict(row)) if row else None

    @_persistence("delete_account")
    async def delete_account(self, account_id: str) -> bool:
        async with self._require_pool().acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM message_logs WHERE account_id = $1", account_id)
                result = await conn.execute("DELETE FROM accounts WHERE id = $1", account_id)
        return result.endswith(" 1")

    # Webhooks

    @_persistence("create_webhook")
    async def create_webhook(self, webhook: Webhook) -> Webhook:
        row = await self._require_pool().fetchrow(
            """
            INSERT INTO webhooks (id, account_id, url, secret, is_active, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            """,
            webhook.id,
            webhook.account_id,
            webhook.url,
            webhook.secret,
            webhook.is_active,
            webhook.created_at,
            webhook.updated_at,
        )
        return Webhook.from_dict(dict(row))

    @_persistence("get_webhook")
    async def get_webhook(self, webhook_id: str) -> Optional[Webhook]:
        row = await self._require_pool().fetchrow("SELECT * FROM webhooks WHERE id = $1", webhook_id)
        return Webhook.from_dict(dict(row)) if row else None

    @_persistence("list_webhooks")
    async def list_webhooks(self, account_id: str) -> List[Webhook]:
        rows = await self._require_pool().fetch(
            "SELECT * FROM webhooks WHERE account_id = $1 ORDER BY created_at DESC",
            account_id,
        )
        return [Webhook.from_dict(dict(r)) for r in rows]

    @_persistence("update_webhook")
    async def update_webhook(self, webhook_id: str, updates: Dict[str, Any]) -> Optional[Webhook]:
        assignments, values = self._build_update(updates, WEBHOOK_UPDATABLE)
        values.append(webhook_id)
        row = await self._require_pool().fetchrow(
            f"UPDATE webhooks SET {assignments} WHERE id = ${len(values)} RETURNING *",
            *values,
        )
        return Webhook.from_dict(dict(row)) if row else None

    @_persistence("delete_webhook")
    async def delete_webhook(self, webhook_id: str) -> bool:
        pool = self._require_pool()
        try:
            result = await pool.execute("DELETE FROM webhooks WHERE id = $1", webhook_id)
        except asyncpg.exceptions.ForeignKeyViolationError:
            logger.warning(
                f"Webhook delete blocked by message_logs reference; nullifying and retrying ({webhook_id})"
            )
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "UPDATE message_logs SET webhook_id = NULL WHERE webhook_id = $1",
                        webhook_id,
                    )
                    result = await conn.execute("DELETE FROM webhooks WHERE id = $1", webhook_id)
        return result.endswith(" 1")

    # Delivery records

    async def _insert_rows(self, conn: asyncpg.Connection, rows: Sequence[Dict[str, Any]]) -> None:
        # Rows carry only their set fields, so group them by column set.
        groups: "OrderedDict[Tuple[str, ...], List[Dict[str, Any]]]" = OrderedDict()
        for row in rows:
            groups.setdefault(tuple(row.keys()), []).append(row)

        for columns, group in groups.items():
            if not columns:
                continue
            placeholders = []
            for i, column in enumerate(columns, start=1):
                placeholders.append(f"${i}::jsonb" if column in JSON_COLUMNS else f"${i}")
            query = (
                f"INSERT INTO message_logs ({', '.join(_quote_identifier(c) for c in columns)}) "
                f"VALUES ({', '.join(placeholders)})"
            )
            args = [
                tuple(
                    json.dumps(row[c]) if c in JSON_COLUMNS else row[c]
                    for c in columns
                )
                for row in group
            ]
            await conn.executemany(query, args)

    @_persistence("insert_delivery_records")
    async def insert_delivery_records(self, records: Sequence[DeliveryRecord]) -> None:
        rows = [r.to_row() for r in records]
        if not rows:
            return
        max_attempts = len({c for row in rows for c in row}) + 2

        for _ in range(max_attempts):
            try:
                async with self._require_pool().acquire() as conn:
                    async with conn.transaction():
                        await self._insert_rows(conn, rows)
                return
            except asyncpg.exceptions.UndefinedColumnError as e:
                match = UNKNOWN_COLUMN_PATTERN.search(str(e))
                if not match:
                    raise
                column = match.group(1)
                logger.warning(f"Retrying log insert without unknown column: {column}")
                rows = strip_unknown_column(rows, column)
            except asyncpg.exceptions.ForeignKeyViolationError:
                # A webhook was deleted while its delivery records were buffered.
                rows, dropped = await self._drop_dangling_webhook_refs(rows)
                if not dropped:
                    raise
                logger.warning(f"Retrying log insert without {dropped} deleted webhook reference(s)")

        raise PersistenceUnavailable("insert_delivery_records", RuntimeError("schema retry limit reached"))

    async def _drop_dangling_webhook_refs(
        self, rows: List[Dict[str, Any]]
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Remove ``webhook_id`` from rows whose webhook no longer exists."""
        referenced = sorted({row["webhook_id"] for row in rows if row.get("webhook_id")})
        if not referenced:
            return rows, 0
        existing = await self._require_pool().fetch(
            "SELECT id FROM webhooks WHERE id = ANY($1::text[])", referenced
        )
        alive = {record["id"] for record in existing}

        cleaned = []
        dropped = 0
        for row in rows:
            if row.get("webhook_id") and row["webhook_id"] not in alive:
                row = {k: v for k, v in row.items() if k != "webhook_id"}
                dropped += 1
            cleaned.append(row)
        return cleaned, dropped

    @_persistence("list_delivery_records")
    async def list_delivery_records(self, account_id: str, limit: int = 100) -> List[DeliveryRecord]:
        rows = await self._require_pool().fetch(
            "SELECT * FROM message_logs WHERE account_id = $1 ORDER BY created_at DESC LIMIT $2",
            account_id,
            limit,
        )
        return [DeliveryRecord.from_row(_row_to_dict(r)) for r in rows]

    @_persistence("delivery_stats")
    async def delivery_stats(self, account_id: str) -> Dict[str, int]:
        row = await self._require_pool().fetchrow(
            """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE direction = 'incoming') AS incoming,
                COUNT(*) FILTER (WHERE direction = 'outgoing') AS outgoing,
                COUNT(*) FILTER (WHERE status = 'success') AS success,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed
            FROM message_logs
            WHERE account_id = $1
            """,
            account_id,
        )
        return {key: int(row[key]) for key in ("total", "incoming", "outgoing", "success", "failed")}
