"""
Data models for wamux.

This module defines the core data structures shared by every component:
- Account / AccountStatus: a messaging session and its lifecycle state
- Webhook: an outbound subscriber for one account
- OutboundItem: an admitted send occupying a slot in the outbound queue
- DeliveryRecord: an append-only log row (messages and webhook deliveries)
- TransportEvent: a typed event emitted by a transport client
"""

from dataclasses import dataclass, field, fields
from typing import Dict, Any, Optional, FrozenSet
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return utcnow()


class AccountStatus(str, Enum):
    """Lifecycle state of a messaging session."""
    INITIALIZING = "initializing"
    QR_READY = "qr_ready"
    READY = "ready"
    AUTH_FAILED = "auth_failed"
    DISCONNECTED = "disconnected"
    FAILED = "failed"          # transport connect() raised during creation


# Allowed edges of the session state machine. Self-edges keep duplicate
# events from the transport idempotent.
ALLOWED_TRANSITIONS: Dict[AccountStatus, FrozenSet[AccountStatus]] = {
    AccountStatus.INITIALIZING: frozenset({
        AccountStatus.INITIALIZING,
        AccountStatus.QR_READY,
        AccountStatus.READY,
        AccountStatus.AUTH_FAILED,
        AccountStatus.DISCONNECTED,
        AccountStatus.FAILED,
    }),
    AccountStatus.QR_READY: frozenset({
        AccountStatus.QR_READY,
        AccountStatus.READY,
        AccountStatus.AUTH_FAILED,
        AccountStatus.DISCONNECTED,
        AccountStatus.FAILED,
    }),
    AccountStatus.READY: frozenset({
        AccountStatus.READY,
        AccountStatus.AUTH_FAILED,
        AccountStatus.DISCONNECTED,
    }),
    AccountStatus.AUTH_FAILED: frozenset({
        AccountStatus.AUTH_FAILED,
        AccountStatus.INITIALIZING,
    }),
    AccountStatus.DISCONNECTED: frozenset({
        AccountStatus.DISCONNECTED,
        AccountStatus.INITIALIZING,
    }),
    AccountStatus.FAILED: frozenset({
        AccountStatus.FAILED,
        AccountStatus.INITIALIZING,
        AccountStatus.DISCONNECTED,
    }),
}


def can_transition(current: AccountStatus, target: AccountStatus) -> bool:
    """Return True if the state machine allows moving from current to target."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class Direction(str, Enum):
    """Direction of a delivery record."""
    INCOMING = "incoming"
    OUTGOING = "outgoing"
    WEBHOOK = "webhook"
    WEBHOOK_INCOMING = "webhook_incoming"


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class TransportEventKind(str, Enum):
    """Events a transport client can emit."""
    QR_RECEIVED = "qr_received"
    READY = "ready"
    AUTHENTICATED = "authenticated"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"
    MESSAGE_RECEIVED = "message_received"


@dataclass
class Account:
    """A messaging account and its session state."""

    id: str
    name: str
    description: str = ""
    status: AccountStatus = AccountStatus.INITIALIZING
    phone_number: Optional[str] = None
    qr_payload: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "phone_number": self.phone_number,
            "qr_payload": self.qr_payload,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        """Create from a store row or serialized dictionary."""
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            description=data.get("description") or "",
            status=AccountStatus(data.get("status") or AccountStatus.INITIALIZING.value),
            phone_number=data.get("phone_number"),
            qr_payload=data.get("qr_payload"),
            error_message=data.get("error_message"),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


@dataclass
class Webhook:
    """An outbound webhook subscriber attached to one account."""

    id: str
    account_id: str
    url: str
    secret: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "url": self.url,
            "secret": self.secret,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Webhook":
        return cls(
            id=str(data["id"]),
            account_id=str(data["account_id"]),
            url=data["url"],
            secret=data.get("secret"),
            is_active=bool(data.get("is_active", True)),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


@dataclass
class OutboundItem:
    """A send occupying one slot of an account's outbound queue."""

    account_id: str
    destination: str
    payload: Any
    enqueued_at: datetime = field(default_factory=utcnow)


@dataclass
class DeliveryRecord:
    """
    Append-only log row for messages and webhook deliveries.

    Only ``account_id``, ``direction`` and ``status`` are mandatory; the rest
    is metadata that depends on the direction.
    """

    account_id: str
    direction: Direction
    status: DeliveryStatus = DeliveryStatus.SUCCESS
    message_id: Optional[str] = None
    sender: Optional[str] = None
    recipient: Optional[str] = None
    message: Optional[str] = None
    timestamp: Optional[int] = None
    type: Optional[str] = None
    chat_id: Optional[str] = None
    is_group: Optional[bool] = None
    group_name: Optional[str] = None
    media: Optional[Dict[str, Any]] = None
    webhook_id: Optional[str] = None
    webhook_url: Optional[str] = None
    response_status: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> Dict[str, Any]:
        """
        Convert to a store row, dropping unset fields.

        Unset fields are left out so that schema-drift handling only has to
        strip columns that are actually present in the batch.
        """
        row: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            row[f.name] = value
        return row

    def to_dict(self) -> Dict[str, Any]:
        row = self.to_row()
        row["created_at"] = self.created_at.isoformat()
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DeliveryRecord":
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in known}
        data["direction"] = Direction(data["direction"])
        data["status"] = DeliveryStatus(data.get("status") or DeliveryStatus.SUCCESS.value)
        if "created_at" in data:
            data["created_at"] = _parse_datetime(data["created_at"])
        return cls(**data)


@dataclass
class InboundMessage:
    """A message received by a transport session."""

    message_id: str
    sender: str
    recipient: str
    body: str = ""
    timestamp: Optional[int] = None
    type: str = "chat"
    chat_id: Optional[str] = None
    is_group: bool = False
    group_name: Optional[str] = None
    media: Optional[Dict[str, Any]] = None

    def to_event_payload(self, account_id: str) -> Dict[str, Any]:
        """Build the full webhook event payload for this message."""
        payload = {
            "account_id": account_id,
            "direction": Direction.INCOMING.value,
            "message_id": self.message_id,
            "sender": self.sender,
            "recipient": self.recipient,
            "message": self.body,
            "timestamp": self.timestamp,
            "type": self.type,
            "chat_id": self.chat_id,
            "is_group": self.is_group,
            "group_name": self.group_name if self.is_group else None,
            "created_at": utcnow().isoformat(),
        }
        if self.media:
            payload["media"] = self.media
        return payload


@dataclass
class TransportEvent:
    """A typed event emitted by a transport client."""

    kind: TransportEventKind
    data: Any = None
    received_at: datetime = field(default_factory=utcnow)


@dataclass
class TransportSendResult:
    """What a transport client returns for a successful send."""

    message_id: Optional[str]
    sender: Optional[str] = None
    recipient: Optional[str] = None
    timestamp: Optional[int] = None


@dataclass
class SendResult:
    """Result returned to callers of the send operations."""

    success: bool
    message_id: Optional[str] = None
    timestamp: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "messageId": self.message_id,
            "timestamp": self.timestamp,
        }


@dataclass
class MediaPayload:
    """Media to send: base64 ``data`` or a ``url`` to fetch."""

    data: Optional[str] = None
    url: Optional[str] = None
    mimetype: Optional[str] = None
    filename: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MediaPayload":
        return cls(
            data=data.get("data"),
            url=data.get("url"),
            mimetype=data.get("mimetype"),
            filename=data.get("filename"),
        )


@dataclass
class SecretCacheEntry:
    """Cached verdict for a presented webhook secret."""

    account_id: str
    secret: str
    valid: bool
    expires_at: float
