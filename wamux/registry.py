"""
Account registry.

Keeps one entry per live account: the in-memory account state, its transport
client, and the queue of transport events waiting to be applied. Each entry
has its own event consumer task and its own lock, so a slow transition on one
account never holds up another. The registry-wide lock only guards adding and
removing entries; status reads are plain dictionary lookups.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

from wamux.config import Settings
from wamux.errors import AccountNotFound, PersistenceUnavailable, TransportNotConfigured
from wamux.models import (
    Account,
    AccountStatus,
    TransportEvent,
    TransportEventKind,
    can_transition,
    utcnow,
)
from wamux.qr import render_qr_data_url
from wamux.store.base import Store
from wamux.transport.base import TransportClient
from wamux.transport.loader import TransportFactory

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, Any], Awaitable[None]]


@dataclass
class _Session:
    """Registry entry for one account."""

    account: Account
    client: TransportClient
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    consumer: Optional[asyncio.Task] = None
    connect_task: Optional[asyncio.Task] = None
    closed: bool = False


class AccountRegistry:
    """
    Concurrency-safe map of account id -> session.

    Owns the account state machine. Transport events are applied one at a
    time per account, in the order the client emitted them.
    """

    def __init__(
        self,
        store: Store,
        transport_factory: Optional[TransportFactory],
        settings: Optional[Settings] = None,
        message_handler: Optional[MessageHandler] = None,
    ):
        """
        Args:
            store: Persistence for account records
            transport_factory: Builds a TransportClient per account
            settings: Passed through to the transport factory
            message_handler: Awaited with (account_id, message) for every
                ``message_received`` event
        """
        self.store = store
        self.transport_factory = transport_factory
        self.settings = settings or Settings()
        self.message_handler = message_handler

        self._sessions: Dict[str, _Session] = {}
        self._sessions_lock = asyncio.Lock()

    # Queries

    def contains(self, account_id: str) -> bool:
        return account_id in self._sessions

    def _get_session(self, account_id: str) -> _Session:
        session = self._sessions.get(account_id)
        if session is None:
            raise AccountNotFound(account_id)
        return session

    def get_status(self, account_id: str) -> AccountStatus:
        """
        Raises:
            AccountNotFound: If the account has no live session
        """
        return self._get_session(account_id).account.status

    def get_account(self, account_id: str) -> Account:
        """Return a snapshot of the in-memory account state."""
        return replace(self._get_session(account_id).account)

    def get_qr_payload(self, account_id: str) -> Optional[str]:
        """Return the pending QR payload, or None once the session is ready."""
        account = self._get_session(account_id).account
        if account.status == AccountStatus.READY:
            return None
        return account.qr_payload

    def get_client(self, account_id: str) -> TransportClient:
        return self._get_session(account_id).client

    def all_statuses(self) -> Dict[str, AccountStatus]:
        return {account_id: s.account.status for account_id, s in list(self._sessions.items())}

    def list_accounts(self) -> List[Account]:
        return [replace(s.account) for s in list(self._sessions.values())]

    async def wait_idle(self, account_id: str) -> None:
        """Wait until every event queued so far for the account has been applied."""
        await self._get_session(account_id).events.join()

    # Lifecycle

    def _build_client(self, account_id: str) -> TransportClient:
        if self.transport_factory is None:
            raise TransportNotConfigured()
        return self.transport_factory(account_id, self.settings)

    async def _register(self, account: Account, client: TransportClient) -> _Session:
        """Add an entry and wire its event sink and consumer."""
        session = _Session(account=account, client=client)

        def sink(event: TransportEvent) -> None:
            if not session.closed:
                session.events.put_nowait(event)

        # Sink first: the client may emit as soon as connect() starts.
        client.set_event_sink(sink)
        async with self._sessions_lock:
            previous = self._sessions.get(account.id)
            self._sessions[account.id] = session
        if previous is not None:
            await self._teardown(previous)
        session.consumer = asyncio.create_task(self._consume(session))
        return session

    async def create_account(self, name: str, description: str = "") -> Account:
        """
        Create and persist an account, then start its session in the background.

        Returns as soon as the account record exists; the caller sees
        ``initializing`` and observes later states by polling.

        Raises:
            TransportNotConfigured: If no transport factory is set
            PersistenceUnavailable: If the initial write fails
        """
        account = Account(id=str(uuid.uuid4()), name=name, description=description or "")
        # A factory error must not leave a stored record behind.
        client = self._build_client(account.id)
        try:
            stored = await self.store.create_account(account)
        except PersistenceUnavailable:
            await self._destroy_client(account.id, client)
            raise
        session = await self._register(replace(stored), client)
        session.connect_task = asyncio.create_task(
            self._connect(session, AccountStatus.FAILED)
        )
        logger.info(f"Created account {stored.id} ({name})")
        return stored

    async def _connect(self, session: _Session, failure_status: AccountStatus) -> bool:
        account_id = session.account.id
        try:
            await session.client.connect()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to start session for account {account_id}: {e}")
            await self._transition(session, failure_status, error_message=str(e))
            return False

    async def _consume(self, session: _Session) -> None:
        """Apply this session's events in arrival order."""
        while True:
            event = await session.events.get()
            try:
                await self._apply_event(session, event)
            except Exception as e:
                logger.error(
                    f"Error handling {event.kind.value} for account {session.account.id}: {e}"
                )
            finally:
                session.events.task_done()

    async def handle_lifecycle_event(self, account_id: str, event: TransportEvent) -> None:
        """
        Apply a transport event to an account directly.

        Raises:
            AccountNotFound: If the account has no live session
        """
        await self._apply_event(self._get_session(account_id), event)

    async def _apply_event(self, session: _Session, event: TransportEvent) -> None:
        account_id = session.account.id
        kind = event.kind

        if kind == TransportEventKind.MESSAGE_RECEIVED:
            if self.message_handler is not None and not session.closed:
                await self.message_handler(account_id, event.data)
            return

        if kind == TransportEventKind.AUTHENTICATED:
            logger.info(f"Account {account_id} authenticated")
            return

        if kind == TransportEventKind.QR_RECEIVED:
            await self._transition(
                session, AccountStatus.QR_READY, qr_payload=self._render_qr(account_id, event.data)
            )
        elif kind == TransportEventKind.READY:
            address = str(event.data or "")
            phone_number = address.split("@", 1)[0] or None
            await self._transition(
                session,
                AccountStatus.READY,
                phone_number=phone_number,
                qr_payload=None,
                error_message=None,
            )
        elif kind == TransportEventKind.AUTH_FAILURE:
            await self._transition(
                session,
                AccountStatus.AUTH_FAILED,
                error_message=str(event.data or "Authentication failed"),
            )
        elif kind == TransportEventKind.DISCONNECTED:
            await self._transition(
                session,
                AccountStatus.DISCONNECTED,
                error_message=str(event.data or "Disconnected"),
            )

    def _render_qr(self, account_id: str, payload: Any) -> Optional[str]:
        """Render the pairing string as a PNG data URL, keeping the raw string if that fails."""
        raw = str(payload or "")
        try:
            return render_qr_data_url(raw)
        except ValueError as e:
            logger.warning(f"Could not render QR code for account {account_id}: {e}")
            return raw or None

    async def _transition(self, session: _Session, target: AccountStatus, **changes: Any) -> bool:
        """
        Move the account to ``target`` if the state graph allows it, and persist.

        Store failures are logged; the in-memory state still changes.
        """
        async with session.lock:
            if session.closed:
                return False

            account = session.account
            current = account.status
            if not can_transition(current, target):
                logger.warning(
                    f"Ignoring transition {current.value} -> {target.value} for account {account.id}"
                )
                return False

            account.status = target
            for key, value in changes.items():
                setattr(account, key, value)
            account.updated_at = utcnow()

            try:
                await self.store.update_account(account.id, {"status": target.value, **changes})
            except PersistenceUnavailable as e:
                logger.error(f"Failed to persist status {target.value} for account {account.id}: {e}")

        if current != target:
            logger.info(f"Account {account.id}: {current.value} -> {target.value}")
        return True

    async def _teardown(self, session: _Session) -> None:
        """Stop the consumer and destroy the client. Never raises."""
        async with session.lock:
            session.closed = True
        session.client.set_event_sink(None)

        for task in (session.connect_task, session.consumer):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass

        await self._destroy_client(session.account.id, session.client)

    async def _destroy_client(self, account_id: str, client: TransportClient) -> None:
        try:
            await client.destroy()
        except Exception as e:
            logger.warning(f"Error destroying session for account {account_id}: {e}")

    async def delete_account(self, account_id: str) -> None:
        """
        Remove the session, tear down the client and delete the stored record.

        The entry is removed first so concurrent operations fail fast with
        AccountNotFound.

        Raises:
            AccountNotFound: If the account is neither live nor stored
            PersistenceUnavailable: If the store delete fails
        """
        async with self._sessions_lock:
            session = self._sessions.pop(account_id, None)

        if session is not None:
            await self._teardown(session)

        deleted = await self.store.delete_account(account_id)
        if session is None and not deleted:
            raise AccountNotFound(account_id)
        logger.info(f"Deleted account {account_id}")

    async def reconnect(self, account: Account) -> bool:
        """
        Start a fresh session for a persisted account.

        Failures move the account to ``disconnected``; nothing is raised.

        Returns:
            True if ``connect()`` completed
        """
        account = replace(account, status=AccountStatus.INITIALIZING, qr_payload=None)
        try:
            client = self._build_client(account.id)
        except Exception as e:
            logger.error(f"Cannot reconnect account {account.id}: {e}")
            try:
                await self.store.update_account(
                    account.id,
                    {"status": AccountStatus.DISCONNECTED.value, "error_message": str(e)},
                )
            except PersistenceUnavailable as pe:
                logger.error(f"Failed to persist status for account {account.id}: {pe}")
            return False

        session = await self._register(account, client)
        try:
            await self.store.update_account(
                account.id,
                {"status": AccountStatus.INITIALIZING.value, "qr_payload": None},
            )
        except PersistenceUnavailable as e:
            logger.error(f"Failed to persist status for account {account.id}: {e}")

        logger.info(f"Reconnecting account {account.id}")
        return await self._connect(session, AccountStatus.DISCONNECTED)

    async def reconnect_all(self) -> Dict[str, bool]:
        """
        Reconnect every persisted account concurrently.

        Returns:
            account_id -> whether connect() completed
        """
        try:
            accounts = await self.store.list_accounts()
        except PersistenceUnavailable as e:
            logger.error(f"Cannot list accounts for reconnect: {e}")
            return {}

        results = await asyncio.gather(
            *(self.reconnect(account) for account in accounts),
            return_exceptions=True,
        )
        outcome: Dict[str, bool] = {}
        for account, result in zip(accounts, results):
            if isinstance(result, BaseException):
                logger.error(f"Reconnect of account {account.id} failed: {result}")
                outcome[account.id] = False
            else:
                outcome[account.id] = result
        logger.info(
            f"Reconnected {sum(outcome.values())}/{len(accounts)} accounts"
        )
        return outcome

    async def shutdown(self) -> None:
        """Tear down every session."""
        async with self._sessions_lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        await asyncio.gather(*(self._teardown(s) for s in sessions), return_exceptions=True)
        logger.info(f"Account registry stopped ({len(sessions)} sessions closed)")
