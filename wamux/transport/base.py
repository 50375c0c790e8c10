"""
Abstract interface for messaging transport clients.

One client instance backs one account's session. The client:
- Connect: opens the session (may take a long time, may require a QR scan)
- Send: delivers a text or media payload to a routing address
- Destroy: tears the session down
- Events: reports lifecycle changes and inbound messages through the sink

Events must be emitted in the order they happen; the registry applies them
in the order they arrive.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from wamux.models import TransportEvent, TransportEventKind, TransportSendResult

EventSink = Callable[[TransportEvent], None]


class TransportClient(ABC):
    """Abstract interface for transport clients."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        self._event_sink: Optional[EventSink] = None

    def set_event_sink(self, sink: Optional[EventSink]) -> None:
        """
        Register the callable that receives this client's events.

        The registry sets the sink before calling ``connect()`` so that no
        early event (such as the first QR code) is lost.
        """
        self._event_sink = sink

    def emit(self, kind: TransportEventKind, data: Any = None) -> None:
        """Hand an event to the sink. Events without a sink are dropped."""
        if self._event_sink is not None:
            self._event_sink(TransportEvent(kind=kind, data=data))

    @abstractmethod
    async def connect(self) -> None:
        """
        Open the session using any previously saved credentials.

        Raises:
            Exception: If the session cannot be started
        """
        pass

    @abstractmethod
    async def send(
        self,
        destination: str,
        payload: Any,
        options: Optional[Dict[str, Any]] = None,
    ) -> TransportSendResult:
        """
        Send a payload to a routing address and wait for the transport to accept it.

        Args:
            destination: Normalized routing address
            payload: Message text, or a MediaPayload
            options: Transport send options (caption, send_audio_as_voice, ...)
        """
        pass

    @abstractmethod
    async def destroy(self) -> None:
        """Close the session and release its resources."""
        pass

    @abstractmethod
    def is_usable(self) -> bool:
        """Return False if the underlying session handle is closed or broken."""
        pass
