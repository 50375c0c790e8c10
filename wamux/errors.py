"""
Error taxonomy for wamux.

Send-path errors (NotReady, QueueFull, SessionUnavailable, TransportSendError)
propagate to the caller of the send operation. Lifecycle errors are absorbed
into account state. DeliveryFailed is only ever recorded, never raised past
the dispatcher.
"""

from typing import Optional


class WamuxError(Exception):
    """Base class for all wamux errors."""


class AccountNotFound(WamuxError):
    """Raised when an operation targets an unknown or deleted account."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class WebhookNotFound(WamuxError):
    """Raised when a webhook id does not exist in the store."""

    def __init__(self, webhook_id: str):
        self.webhook_id = webhook_id
        super().__init__(f"Webhook {webhook_id} not found")


class NotReady(WamuxError):
    """Raised when a send is attempted on a session that is not ready."""

    def __init__(self, account_id: str, status: Optional[str]):
        self.account_id = account_id
        self.status = status
        super().__init__(
            f"Session for account {account_id} is not ready. Current status: {status}"
        )


class SessionUnavailable(WamuxError):
    """Raised when the transport handle reports a closed or unusable state."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Session for account {account_id} is closed or not available")


class QueueFull(WamuxError):
    """Raised when an account's outbound queue is at capacity."""

    def __init__(self, account_id: str, depth: int, cap: int):
        self.account_id = account_id
        self.depth = depth
        self.cap = cap
        super().__init__(
            f"Outbound queue for account {account_id} is full ({depth}/{cap}). Please try again later."
        )


class InvalidMedia(WamuxError):
    """Raised when a media payload is malformed or too large."""


class TransportSendError(WamuxError):
    """Raised when the transport client fails to send a message."""

    def __init__(self, account_id: str, cause: BaseException):
        self.account_id = account_id
        self.cause = cause
        super().__init__(f"Transport send failed for account {account_id}: {cause}")


class DeliveryFailed(WamuxError):
    """A single webhook delivery failed. Recorded, never propagated."""

    def __init__(self, webhook_id: str, reason: str, status_code: Optional[int] = None):
        self.webhook_id = webhook_id
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)


class PersistenceUnavailable(WamuxError):
    """Raised when a store call fails."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Store operation '{operation}' failed{detail}")


class UnknownColumnError(PersistenceUnavailable):
    """A batch insert was rejected because of a field the schema does not know."""

    def __init__(self, column: str, cause: Optional[BaseException] = None):
        super().__init__("insert_delivery_records", cause)
        self.column = column

    def __str__(self) -> str:
        return f"Unknown column '{self.column}' in message_logs"


class TransportNotConfigured(WamuxError):
    """Raised when a session is requested but no transport factory is configured."""

    def __init__(self):
        super().__init__("No transport factory configured (set WAMUX_TRANSPORT_FACTORY)")
