"""
Webhook fan-out.

Delivers one inbound event to every active webhook of an account at the same
time. Targets recognized as automation platforms (n8n) get a reduced payload
and a shorter timeout. Each attempt is made exactly once and its outcome is
handed to the LogBatcher; nothing is raised to the caller.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from wamux.caches import WebhookListCache
from wamux.errors import DeliveryFailed
from wamux.log_batcher import LogBatcher
from wamux.models import DeliveryRecord, DeliveryStatus, Direction, Webhook

logger = logging.getLogger(__name__)

AUTOMATION_MARKERS = ("n8n", "nodemation")

# Fields kept in the reduced payload sent to automation targets.
OPTIMIZED_FIELDS = (
    "account_id",
    "direction",
    "sender",
    "recipient",
    "message",
    "timestamp",
    "type",
    "chat_id",
    "is_group",
)

SECRET_HEADER = "X-Webhook-Secret"
ACCOUNT_HEADER = "X-Account-ID"


def is_automation_target(url: str) -> bool:
    """Return True if the URL points at a known workflow-automation platform."""
    lowered = (url or "").lower()
    return any(marker in lowered for marker in AUTOMATION_MARKERS)


def optimize_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Return the reduced payload for automation targets."""
    reduced = {key: payload.get(key) for key in OPTIMIZED_FIELDS}
    reduced["optimized"] = True
    return reduced


class WebhookDispatcher:
    """Parallel, single-attempt delivery of events to an account's webhooks."""

    def __init__(
        self,
        webhooks: WebhookListCache,
        log_batcher: Optional[LogBatcher] = None,
        automation_timeout: float = 5.0,
        default_timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            webhooks: Read-through cache of the account's webhooks
            log_batcher: Receives one record per delivery attempt
            automation_timeout: Timeout for automation targets (seconds)
            default_timeout: Timeout for every other target (seconds)
            http_client: Shared client; created in ``start()`` if None
        """
        self.webhooks = webhooks
        self.log_batcher = log_batcher
        self.automation_timeout = automation_timeout
        self.default_timeout = default_timeout
        self._client = http_client
        self._owns_client = http_client is None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.default_timeout,
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def policy_for(self, webhook: Webhook, payload: Dict[str, Any]) -> Tuple[Dict[str, Any], float]:
        """Pick the body and timeout for one target."""
        if is_automation_target(webhook.url):
            return optimize_payload(payload), self.automation_timeout
        return payload, self.default_timeout

    async def dispatch(self, account_id: str, payload: Dict[str, Any]) -> List[DeliveryRecord]:
        """
        Deliver ``payload`` to every active webhook of the account.

        Returns once every attempt has settled. Never raises for delivery
        failures.

        Returns:
            One DeliveryRecord per attempted webhook
        """
        try:
            webhooks = await self.webhooks.get(account_id)
        except Exception as e:
            logger.error(f"Cannot load webhooks for account {account_id}: {e}")
            return []

        active = [w for w in webhooks if w.is_active]
        if not active:
            return []

        if self._client is None:
            await self.start()

        records = await asyncio.gather(
            *(self._deliver(account_id, webhook, payload) for webhook in active)
        )
        succeeded = sum(1 for r in records if r.status == DeliveryStatus.SUCCESS)
        logger.debug(
            f"Dispatched event for account {account_id} to {len(active)} webhooks ({succeeded} succeeded)"
        )
        return list(records)

    async def _deliver(self, account_id: str, webhook: Webhook, payload: Dict[str, Any]) -> DeliveryRecord:
        body, timeout = self.policy_for(webhook, payload)
        headers = {
            "Content-Type": "application/json",
            SECRET_HEADER: webhook.secret or "",
            ACCOUNT_HEADER: account_id,
        }

        record = DeliveryRecord(
            account_id=account_id,
            direction=Direction.WEBHOOK,
            status=DeliveryStatus.SUCCESS,
            message_id=payload.get("message_id"),
            sender=payload.get("sender"),
            recipient=payload.get("recipient"),
            message=payload.get("message"),
            webhook_id=webhook.id,
            webhook_url=webhook.url,
        )

        try:
            response = await self._client.post(
                webhook.url, json=body, headers=headers, timeout=timeout
            )
            record.response_status = response.status_code
            if not response.is_success:
                raise DeliveryFailed(
                    webhook.id,
                    f"HTTP {response.status_code}",
                    status_code=response.status_code,
                )
        except DeliveryFailed as e:
            record.status = DeliveryStatus.FAILED
            record.error_message = e.reason
        except httpx.TimeoutException:
            record.status = DeliveryStatus.FAILED
            record.error_message = f"Timed out after {timeout}s"
        except Exception as e:
            record.status = DeliveryStatus.FAILED
            record.error_message = str(e) or type(e).__name__

        if record.status == DeliveryStatus.FAILED:
            logger.warning(
                f"Webhook {webhook.id} delivery failed for account {account_id}: {record.error_message}"
            )

        if self.log_batcher is not None:
            self.log_batcher.record(record)
        return record
