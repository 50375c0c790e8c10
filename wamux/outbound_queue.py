"""
Per-account outbound admission gate.

Every send occupies one slot of its account's queue while the transport is
working on it. The queue only bounds how many sends may be in flight for an
account; it does not store or retry anything.
"""

import base64
import binascii
import logging
import re
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

import httpx

from wamux.errors import (
    AccountNotFound,
    InvalidMedia,
    NotReady,
    QueueFull,
    SessionUnavailable,
    TransportSendError,
    WamuxError,
)
from wamux.log_batcher import LogBatcher
from wamux.models import (
    AccountStatus,
    DeliveryRecord,
    DeliveryStatus,
    Direction,
    MediaPayload,
    OutboundItem,
    SendResult,
    TransportSendResult,
)
from wamux.phone import PhoneNumberNormalizer
from wamux.registry import AccountRegistry
from wamux.transport.base import TransportClient

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = re.compile(r"^data:([^;,]+)?;base64,", re.IGNORECASE)
DEFAULT_MAX_MEDIA_BYTES = 16 * 1024 * 1024
MEDIA_FETCH_TIMEOUT = 30.0


def default_media_filename(mimetype: str) -> str:
    """``image/png`` -> ``media.png``."""
    subtype = mimetype.split("/", 1)[1] if "/" in mimetype else ""
    return f"media.{subtype or 'bin'}"


class OutboundQueue:
    """Bounded per-account send gate in front of the transport clients."""

    def __init__(
        self,
        registry: AccountRegistry,
        normalizer: PhoneNumberNormalizer,
        log_batcher: Optional[LogBatcher] = None,
        cap: int = 20,
        max_media_bytes: int = DEFAULT_MAX_MEDIA_BYTES,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            registry: Source of account status and transport clients
            normalizer: Resolves raw destinations to routing addresses
            log_batcher: Receives one outgoing record per send attempt
            cap: Maximum number of sends in flight per account
            max_media_bytes: Largest decoded media payload accepted
            http_client: Client used to fetch media by URL (one is created per fetch if None)
        """
        if cap < 1:
            raise ValueError(f"cap must be >= 1, got {cap}")
        self.registry = registry
        self.normalizer = normalizer
        self.log_batcher = log_batcher
        self.cap = cap
        self.max_media_bytes = max_media_bytes
        self.http_client = http_client
        self._queues: Dict[str, List[OutboundItem]] = {}

    def depth(self, account_id: str) -> int:
        return len(self._queues.get(account_id, ()))

    def forget(self, account_id: str) -> None:
        """Drop the account's queue. In-flight sends finish on their own."""
        self._queues.pop(account_id, None)

    def _admit(self, account_id: str) -> TransportClient:
        """
        Run the admission checks in order and return the client to send with.

        Raises:
            AccountNotFound, QueueFull, NotReady, SessionUnavailable
        """
        if not self.registry.contains(account_id):
            raise AccountNotFound(account_id)

        depth = self.depth(account_id)
        if depth >= self.cap:
            raise QueueFull(account_id, depth, self.cap)

        status = self.registry.get_status(account_id)
        if status != AccountStatus.READY:
            raise NotReady(account_id, status.value)

        client = self.registry.get_client(account_id)
        if not client.is_usable():
            raise SessionUnavailable(account_id)
        return client

    def _record(self, record: DeliveryRecord) -> None:
        if self.log_batcher is not None:
            self.log_batcher.record(record)

    def _record_failure(
        self,
        account_id: str,
        destination: str,
        message: Optional[str],
        error: BaseException,
        media: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._record(DeliveryRecord(
            account_id=account_id,
            direction=Direction.OUTGOING,
            status=DeliveryStatus.FAILED,
            recipient=destination,
            message=message,
            type="media" if media else "text",
            media=media,
            error_message=str(error),
        ))

    async def _send(
        self,
        account_id: str,
        destination: str,
        payload: Any,
        options: Optional[Dict[str, Any]],
        message: Optional[str],
        media_info: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        try:
            client = self._admit(account_id)
            address = self.normalizer.normalize(destination)
        except AccountNotFound:
            raise
        except (WamuxError, ValueError) as e:
            logger.warning(f"Send rejected for account {account_id}: {e}")
            self._record_failure(account_id, destination, message, e, media_info)
            raise

        item = OutboundItem(account_id=account_id, destination=address, payload=payload)
        queue = self._queues.setdefault(account_id, [])
        queue.append(item)
        try:
            result: TransportSendResult = await client.send(address, payload, options)
        except Exception as e:
            logger.error(f"Transport send failed for account {account_id}: {e}")
            self._record_failure(account_id, address, message, e, media_info)
            raise TransportSendError(account_id, e) from e
        finally:
            self._remove(account_id, item)

        self._record(DeliveryRecord(
            account_id=account_id,
            direction=Direction.OUTGOING,
            status=DeliveryStatus.SUCCESS,
            message_id=result.message_id,
            sender=result.sender,
            recipient=result.recipient or address,
            message=message,
            timestamp=result.timestamp,
            type="media" if media_info else "text",
            media=media_info,
        ))
        return SendResult(success=True, message_id=result.message_id, timestamp=result.timestamp)

    def _remove(self, account_id: str, item: OutboundItem) -> None:
        queue = self._queues.get(account_id)
        if not queue:
            return
        for index, queued in enumerate(queue):
            if queued is item:
                del queue[index]
                break

    async def enqueue(
        self,
        account_id: str,
        destination: str,
        payload: Any,
        options: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        """
        Send a text payload through the account's session.

        Raises:
            AccountNotFound: If the account has no live session
            QueueFull: If the account already has ``cap`` sends in flight
            NotReady: If the session is not ``ready``
            SessionUnavailable: If the transport handle is closed
            ValueError: If the destination has no digits
            TransportSendError: If the transport raised while sending
        """
        message = payload if isinstance(payload, str) else None
        return await self._send(account_id, destination, payload, options, message)

    async def send_media(
        self,
        account_id: str,
        destination: str,
        media: Union[MediaPayload, Dict[str, Any]],
        caption: str = "",
        options: Optional[Dict[str, Any]] = None,
    ) -> SendResult:
        """
        Send an image, document, audio or video.

        ``media`` carries base64 ``data`` (optionally as a data URL) or a
        ``url`` to fetch. Audio sent with ``send_audio_as_voice`` goes out as a
        voice note; otherwise ``send_media_as_document`` is honored.

        Raises:
            InvalidMedia: If the payload is malformed, unreachable or too large
            plus everything ``enqueue`` raises
        """
        if isinstance(media, dict):
            media = MediaPayload.from_dict(media)
        if media is None or not (media.data or media.url):
            raise InvalidMedia("Invalid media payload. Expected data or url")

        source = "base64" if media.data else "url"

        # Reject before fetching anything.
        try:
            self._admit(account_id)
        except AccountNotFound:
            raise
        except WamuxError as e:
            logger.warning(f"Media send rejected for account {account_id}: {e}")
            self._record_failure(
                account_id, destination, caption or "", e, {"source": source}
            )
            raise

        data = media.data or ""
        mimetype = media.mimetype or ""
        filename = media.filename or ""

        if not data:
            content, fetched_type = await self._fetch_media(media.url)
            data = base64.b64encode(content).decode("ascii")
            mimetype = mimetype or fetched_type or "application/octet-stream"
            if not filename:
                filename = urlparse(media.url).path.rsplit("/", 1)[-1]

        match = DATA_URL_PREFIX.match(data)
        if match:
            data = data[match.end():]
            mimetype = mimetype or (match.group(1) or "")

        if not mimetype:
            raise InvalidMedia("mimetype is required when sending media")

        try:
            size = len(base64.b64decode(data, validate=True))
        except (binascii.Error, ValueError):
            raise InvalidMedia("Media data is not valid base64")
        if size > self.max_media_bytes:
            raise InvalidMedia(
                f"Media too large ({size / 1024 / 1024:.2f}MB). "
                f"Max allowed {self.max_media_bytes / 1024 / 1024:.0f}MB"
            )

        filename = filename or default_media_filename(mimetype)
        send_options: Dict[str, Any] = {"caption": caption}
        options = options or {}
        if mimetype.startswith("audio/") and options.get("send_audio_as_voice"):
            send_options["send_audio_as_voice"] = True
        elif options.get("send_media_as_document"):
            send_options["send_media_as_document"] = True

        payload = MediaPayload(data=data, mimetype=mimetype, filename=filename)
        media_info = {"mimetype": mimetype, "filename": filename, "source": source, "size": size}
        return await self._send(
            account_id, destination, payload, send_options, caption or "", media_info
        )

    async def _fetch_media(self, url: str) -> Tuple[bytes, str]:
        """
        Download media and return (content, content_type).

        Raises:
            InvalidMedia: On fetch failure or oversize content
        """
        parsed = urlparse(url)
        if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
            raise InvalidMedia("Media url must be an http(s) URL")

        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, timeout=MEDIA_FETCH_TIMEOUT)
            else:
                async with httpx.AsyncClient(timeout=MEDIA_FETCH_TIMEOUT) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch media from {url}: {e}")
            raise InvalidMedia(f"Failed to fetch media: {type(e).__name__}")

        content = response.content
        if len(content) > self.max_media_bytes:
            raise InvalidMedia(
                f"Media too large ({len(content) / 1024 / 1024:.2f}MB). "
                f"Max allowed {self.max_media_bytes / 1024 / 1024:.0f}MB"
            )
        content_type = response.headers.get("content-type", "").split(";", 1)[0].strip()
        return content, content_type
