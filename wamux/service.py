"""
RelayService wires the components together and implements the use cases the
HTTP API exposes: account and webhook management, sending, webhook replies,
the public inbound receiver, and log/stat queries.
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Set

import httpx

from wamux.caches import WebhookListCache, WebhookSecretCache
from wamux.config import Settings
from wamux.dispatcher import WebhookDispatcher
from wamux.errors import AccountNotFound, WebhookNotFound
from wamux.log_batcher import LogBatcher
from wamux.models import (
    Account,
    AccountStatus,
    DeliveryRecord,
    DeliveryStatus,
    Direction,
    InboundMessage,
    MediaPayload,
    SendResult,
    Webhook,
)
from wamux.outbound_queue import OutboundQueue
from wamux.phone import PhoneNumberNormalizer
from wamux.registry import AccountRegistry
from wamux.store import Store, create_store
from wamux.transport.loader import TransportFactory, load_transport_factory
from wamux.utils import validate_webhook_url

logger = logging.getLogger(__name__)

WEBHOOK_MUTABLE_FIELDS = frozenset({"url", "secret", "is_active"})


class RelayService:
    """Owns every component of a running relay."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[Store] = None,
        transport_factory: Optional[TransportFactory] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            settings: Runtime settings (defaults to Settings())
            store: Persistence backend (built from settings.database_url if None)
            transport_factory: Session factory (loaded from settings.transport_factory if None)
            http_client: Shared client for webhook delivery and media fetches
        """
        self.settings = settings or Settings()
        self.store = store or create_store(self.settings.database_url)

        if transport_factory is None and self.settings.transport_factory:
            transport_factory = load_transport_factory(self.settings.transport_factory)

        self.normalizer = PhoneNumberNormalizer(
            default_country_code=self.settings.default_country_code,
            routing_suffix=self.settings.routing_suffix,
            max_cache_size=self.settings.phone_cache_size,
        )
        self.log_batcher = LogBatcher(
            self.store,
            batch_size=self.settings.log_batch_size,
            flush_interval=self.settings.log_flush_interval,
        )
        self.webhook_cache = WebhookListCache(
            self.store,
            ttl_seconds=self.settings.webhook_list_ttl,
            max_entries=self.settings.webhook_list_max_entries,
        )
        self.secret_cache = WebhookSecretCache(
            self.webhook_cache,
            ttl_seconds=self.settings.secret_cache_ttl,
            clear_interval=self.settings.secret_cache_clear_interval,
            max_entries=self.settings.secret_cache_max_entries,
        )
        self.dispatcher = WebhookDispatcher(
            self.webhook_cache,
            log_batcher=self.log_batcher,
            automation_timeout=self.settings.automation_timeout,
            default_timeout=self.settings.default_timeout,
            http_client=http_client,
        )
        self.registry = AccountRegistry(
            self.store,
            transport_factory,
            settings=self.settings,
            message_handler=self.handle_incoming_message,
        )
        self.outbound = OutboundQueue(
            self.registry,
            self.normalizer,
            log_batcher=self.log_batcher,
            cap=self.settings.queue_cap,
            max_media_bytes=self.settings.max_media_bytes,
            http_client=http_client,
        )

        self._background: Set[asyncio.Task] = set()
        self.started_at: Optional[float] = None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def start(self, reconnect: bool = True) -> None:
        """
        Connect the store, start background workers and, optionally,
        reconnect every persisted account without waiting for the sessions.

        Raises:
            PersistenceUnavailable: If the store cannot be reached
        """
        await self.store.connect()
        await self.log_batcher.start()
        await self.secret_cache.start()
        await self.dispatcher.start()
        self.started_at = time.monotonic()
        if reconnect:
            self._spawn(self.registry.reconnect_all())
        logger.info("Relay service started")

    async def stop(self) -> None:
        await self.registry.shutdown()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.dispatcher.close()
        await self.secret_cache.stop()
        await self.log_batcher.stop()
        await self.store.close()
        logger.info("Relay service stopped")

    # Inbound traffic

    async def handle_incoming_message(self, account_id: str, message: Any) -> None:
        """
        Record an inbound message and fan it out to the account's webhooks.

        A message that cannot be processed is logged as a failed incoming
        record carrying the error; nothing is raised to the caller.
        """
        try:
            payload = self._inbound_payload(account_id, message)
            self._record_inbound(account_id, payload)
            self._spawn(self.dispatcher.dispatch(account_id, payload))
        except Exception as e:
            logger.error(f"Error handling incoming message for account {account_id}: {e}")
            details = message if isinstance(message, dict) else {}
            self.log_batcher.record(DeliveryRecord(
                account_id=account_id,
                direction=Direction.INCOMING,
                status=DeliveryStatus.FAILED,
                message_id=getattr(message, "message_id", None) or details.get("message_id"),
                sender=getattr(message, "sender", None) or details.get("sender"),
                recipient=getattr(message, "recipient", None) or details.get("recipient"),
                message=getattr(message, "body", None) or details.get("message"),
                error_message=str(e),
            ))

    def _inbound_payload(self, account_id: str, message: Any) -> Dict[str, Any]:
        if isinstance(message, InboundMessage):
            return message.to_event_payload(account_id)
        if isinstance(message, dict):
            return {"account_id": account_id, "direction": Direction.INCOMING.value, **message}
        raise ValueError(f"Unsupported message event: {type(message).__name__}")

    def _record_inbound(self, account_id: str, payload: Dict[str, Any]) -> None:
        self.log_batcher.record(DeliveryRecord(
            account_id=account_id,
            direction=Direction.INCOMING,
            status=DeliveryStatus.SUCCESS,
            message_id=payload.get("message_id"),
            sender=payload.get("sender"),
            recipient=payload.get("recipient"),
            message=payload.get("message"),
            timestamp=payload.get("timestamp"),
            type=payload.get("type"),
            chat_id=payload.get("chat_id"),
            is_group=payload.get("is_group"),
            group_name=payload.get("group_name"),
            media=payload.get("media"),
        ))

    def record_inbound_webhook(self, account_id: str, body: Any) -> DeliveryRecord:
        """Log an event posted to the public receiver. No other processing."""
        record = DeliveryRecord(
            account_id=account_id,
            direction=Direction.WEBHOOK_INCOMING,
            status=DeliveryStatus.SUCCESS,
            message=json.dumps(body, default=str),
        )
        self.log_batcher.record(record)
        return record

    # Accounts

    async def create_account(self, name: str, description: str = "") -> Account:
        return await self.registry.create_account(name, description)

    async def list_accounts(self) -> List[Account]:
        """Stored accounts, with live session state where a session exists."""
        accounts = await self.store.list_accounts()
        return [self._with_live_state(account) for account in accounts]

    def _with_live_state(self, account: Account) -> Account:
        if self.registry.contains(account.id):
            try:
                return self.registry.get_account(account.id)
            except AccountNotFound:
                pass
        return account

    async def get_account(self, account_id: str) -> Account:
        if self.registry.contains(account_id):
            try:
                return self.registry.get_account(account_id)
            except AccountNotFound:
                pass
        account = await self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def delete_account(self, account_id: str) -> None:
        try:
            await self.registry.delete_account(account_id)
        finally:
            self.outbound.forget(account_id)
            self._invalidate_webhooks(account_id)

    def get_qr_payload(self, account_id: str) -> Optional[str]:
        return self.registry.get_qr_payload(account_id)

    # Webhooks

    def _invalidate_webhooks(self, account_id: str) -> None:
        self.webhook_cache.invalidate(account_id)
        removed = self.secret_cache.invalidate_account(account_id)
        if removed:
            logger.debug(f"Invalidated {removed} cached secrets for account {account_id}")

    async def _require_account(self, account_id: str) -> None:
        if self.registry.contains(account_id):
            return
        if await self.store.get_account(account_id) is None:
            raise AccountNotFound(account_id)

    async def list_webhooks(self, account_id: str) -> List[Webhook]:
        return await self.store.list_webhooks(account_id)

    async def create_webhook(
        self,
        account_id: str,
        url: str,
        secret: Optional[str] = None,
        is_active: bool = True,
    ) -> Webhook:
        """
        Raises:
            ValueError: If the URL is not a usable http(s) URL
            AccountNotFound: If the account does not exist
        """
        url = validate_webhook_url(url)
        await self._require_account(account_id)
        webhook = Webhook(
            id=str(uuid.uuid4()),
            account_id=account_id,
            url=url,
            secret=secret or None,
            is_active=is_active,
        )
        try:
            return await self.store.create_webhook(webhook)
        finally:
            self._invalidate_webhooks(account_id)

    async def update_webhook(self, webhook_id: str, updates: Dict[str, Any]) -> Webhook:
        existing = await self.store.get_webhook(webhook_id)
        if existing is None:
            raise WebhookNotFound(webhook_id)

        changes = {k: v for k, v in updates.items() if k in WEBHOOK_MUTABLE_FIELDS}
        if "url" in changes:
            changes["url"] = validate_webhook_url(changes["url"])
        try:
            updated = await self.store.update_webhook(webhook_id, changes)
        finally:
            self._invalidate_webhooks(existing.account_id)
        if updated is None:
            raise WebhookNotFound(webhook_id)
        return updated

    async def toggle_webhook(self, webhook_id: str) -> Webhook:
        existing = await self.store.get_webhook(webhook_id)
        if existing is None:
            raise WebhookNotFound(webhook_id)
        return await self.update_webhook(webhook_id, {"is_active": not existing.is_active})

    async def delete_webhook(self, webhook_id: str) -> None:
        existing = await self.store.get_webhook(webhook_id)
        if existing is None:
            raise WebhookNotFound(webhook_id)
        try:
            await self.store.delete_webhook(webhook_id)
        finally:
            self._invalidate_webhooks(existing.account_id)

    async def webhook_secrets(self, account_id: str) -> List[Dict[str, Any]]:
        webhooks = await self.store.list_webhooks(account_id)
        return [
            {"id": w.id, "url": w.url, "secret": w.secret, "is_active": w.is_active}
            for w in webhooks
        ]

    async def validate_webhook_secret(self, account_id: str, secret: str) -> bool:
        return await self.secret_cache.validate(account_id, secret)

    # Sending

    async def send_message(
        self,
        account_id: str,
        number: str,
        message: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        return await self.outbound.enqueue(account_id, number, message, options)

    async def send_media(
        self,
        account_id: str,
        number: str,
        media: Any,
        caption: str = "",
        options: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        if isinstance(media, dict):
            media = MediaPayload.from_dict(media)
        return await self.outbound.send_media(account_id, number, media, caption, options)

    def send_in_background(self, coro) -> asyncio.Task:
        """Run a send without waiting for it; the outcome is only logged."""
        async def runner():
            try:
                result = await coro
                logger.info(f"Background send completed: {result.success}")
            except Exception as e:
                logger.error(f"Background send failed: {e}")

        return self._spawn(runner())

    # Queries

    async def get_logs(self, account_id: str, limit: int = 100) -> List[DeliveryRecord]:
        return await self.store.list_delivery_records(account_id, limit=limit)

    async def get_stats(self) -> Dict[str, Any]:
        accounts = await self.list_accounts()
        total_messages = 0
        success_messages = 0
        for account in accounts:
            stats = await self.store.delivery_stats(account.id)
            total_messages += stats["total"]
            success_messages += stats["success"]

        success_rate = round(success_messages / total_messages * 100) if total_messages else 0
        return {
            "totalAccounts": len(accounts),
            "activeAccounts": sum(1 for a in accounts if a.status == AccountStatus.READY),
            "totalMessages": total_messages,
            "successRate": success_rate,
        }

    def health(self) -> Dict[str, Any]:
        statuses = self.registry.all_statuses()
        counts: Dict[str, int] = {}
        for status in statuses.values():
            counts[status.value] = counts.get(status.value, 0) + 1
        return {
            "status": "ok",
            "uptime": round(time.monotonic() - self.started_at, 3) if self.started_at else 0.0,
            "accounts": {"total": len(statuses), "by_status": counts},
            "log_batcher": {
                "pending": self.log_batcher.pending,
                "flushed": self.log_batcher.flushed_count,
                "failed_flushes": self.log_batcher.failed_flushes,
            },
            "secret_cache_size": len(self.secret_cache),
        }
