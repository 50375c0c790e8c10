"""
HTTP API for wamux.

Management routes under /api require ``Authorization: Bearer <WAMUX_API_TOKEN>``.
The webhook reply route authenticates with a webhook secret instead, and the
health check and public inbound receiver are open.
"""

import hmac
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from wamux.errors import (
    AccountNotFound,
    InvalidMedia,
    NotReady,
    PersistenceUnavailable,
    QueueFull,
    SessionUnavailable,
    TransportNotConfigured,
    TransportSendError,
    WamuxError,
    WebhookNotFound,
)
from wamux.service import RelayService
from wamux.utils import sanitize_error_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Management"])
public_router = APIRouter(tags=["Public"])

# Global service reference
_service: Optional[RelayService] = None


def set_service(service: Optional[RelayService]) -> None:
    """Set the global relay service instance."""
    global _service
    _service = service


def current_service() -> Optional[RelayService]:
    """Return the global relay service instance, or None if unset."""
    return _service


def get_service() -> RelayService:
    """Get the global relay service instance."""
    if _service is None:
        raise HTTPException(status_code=503, detail="Relay service not initialized")
    return _service


async def verify_api_token(authorization: str = Header(None)) -> bool:
    """Verify the management API bearer token."""
    api_token = get_service().settings.api_token
    if not api_token:
        raise HTTPException(
            status_code=403,
            detail="Management API disabled. Set WAMUX_API_TOKEN environment variable.",
        )

    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    token = authorization.replace("Bearer ", "").strip()
    if not hmac.compare_digest(token.encode("utf-8"), api_token.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid API token")

    return True


ERROR_STATUS = (
    (AccountNotFound, 404),
    (WebhookNotFound, 404),
    (NotReady, 409),
    (SessionUnavailable, 409),
    (QueueFull, 429),
    (InvalidMedia, 400),
    (TransportNotConfigured, 503),
    (PersistenceUnavailable, 503),
    (TransportSendError, 502),
)


def error_status(error: WamuxError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


async def wamux_error_handler(request: Request, exc: WamuxError) -> JSONResponse:
    """Map the error taxonomy onto HTTP responses."""
    status_code = error_status(exc)
    if isinstance(exc, (PersistenceUnavailable, TransportSendError)) or status_code == 500:
        detail = sanitize_error_message(exc, request.url.path)
    else:
        detail = str(exc)
    return JSONResponse(status_code=status_code, content={"detail": detail})


# Request models


class CreateAccountRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""


class CreateWebhookRequest(BaseModel):
    account_id: str
    url: str
    secret: Optional[str] = None
    is_active: bool = True


class SendMessageRequest(BaseModel):
    account_id: str
    number: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)


class MediaModel(BaseModel):
    data: Optional[str] = None
    url: Optional[str] = None
    mimetype: Optional[str] = None
    filename: Optional[str] = None


class SendMediaRequest(BaseModel):
    account_id: str
    number: str = Field(..., min_length=1)
    media: MediaModel
    caption: str = ""
    options: Dict[str, Any] = Field(default_factory=dict)


class WebhookReplyRequest(BaseModel):
    account_id: str
    number: str = Field(..., min_length=1)
    webhook_secret: str = Field(..., min_length=1)
    message: Optional[str] = None
    media: Optional[MediaModel] = None
    caption: Optional[str] = None


# Public routes


@public_router.get("/health")
async def health_check():
    """Liveness plus account and log-batcher counters."""
    return get_service().health()


@public_router.post("/webhook/{account_id}")
async def receive_webhook(account_id: str, request: Request):
    """Public receiver: logs the posted JSON against the account."""
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed JSON payload")
    get_service().record_inbound_webhook(account_id, body)
    return {"success": True}


@public_router.post("/api/webhook-reply")
async def webhook_reply(body: WebhookReplyRequest, request: Request, source: Optional[str] = None):
    """
    Send a reply on behalf of a webhook subscriber.

    Authenticated by the subscriber's webhook secret. Automation clients
    (n8n) get a ``pending`` answer right away and the send runs in the
    background.
    """
    service = get_service()
    user_agent = request.headers.get("user-agent", "")
    is_automation = "n8n" in user_agent.lower() or source == "n8n"

    if not is_automation:
        logger.info(f"Webhook reply request for account {body.account_id}")

    if not await service.validate_webhook_secret(body.account_id, body.webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    if body.media and body.media.data and body.media.mimetype:
        send = service.send_media(
            body.account_id,
            body.number,
            body.media.model_dump(),
            body.caption or body.message or "",
        )
    elif body.message:
        send = service.send_message(body.account_id, body.number, body.message)
    else:
        raise HTTPException(status_code=400, detail="message or media is required")

    if is_automation:
        service.send_in_background(send)
        return {"status": "pending", "message": "Message queued for delivery"}

    try:
        result = await send
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()


# Management routes


@router.get("/accounts", dependencies=[Depends(verify_api_token)])
async def list_accounts() -> List[Dict[str, Any]]:
    accounts = await get_service().list_accounts()
    return [a.to_dict() for a in accounts]


@router.post("/accounts", dependencies=[Depends(verify_api_token)])
async def create_account(body: CreateAccountRequest):
    account = await get_service().create_account(body.name, body.description)
    return account.to_dict()


@router.get("/accounts/{account_id}", dependencies=[Depends(verify_api_token)])
async def get_account(account_id: str):
    account = await get_service().get_account(account_id)
    return account.to_dict()


@router.delete("/accounts/{account_id}", dependencies=[Depends(verify_api_token)])
async def delete_account(account_id: str):
    await get_service().delete_account(account_id)
    return {"success": True}


@router.get("/accounts/{account_id}/qr", dependencies=[Depends(verify_api_token)])
async def get_qr_code(account_id: str):
    qr_payload = get_service().get_qr_payload(account_id)
    if not qr_payload:
        raise HTTPException(status_code=404, detail="QR code not available")
    return {"qr_code": qr_payload}


@router.get("/accounts/{account_id}/logs", dependencies=[Depends(verify_api_token)])
async def get_logs(account_id: str, limit: int = Query(100, ge=1, le=1000)):
    records = await get_service().get_logs(account_id, limit=limit)
    return [r.to_dict() for r in records]


@router.get("/accounts/{account_id}/webhooks", dependencies=[Depends(verify_api_token)])
async def list_webhooks(account_id: str):
    webhooks = await get_service().list_webhooks(account_id)
    return [w.to_dict() for w in webhooks]


@router.get("/accounts/{account_id}/webhook-secrets", dependencies=[Depends(verify_api_token)])
async def list_webhook_secrets(account_id: str):
    return await get_service().webhook_secrets(account_id)


@router.post("/webhooks", dependencies=[Depends(verify_api_token)])
async def create_webhook(body: CreateWebhookRequest):
    try:
        webhook = await get_service().create_webhook(
            body.account_id, body.url, secret=body.secret, is_active=body.is_active
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return webhook.to_dict()


@router.patch("/webhooks/{webhook_id}/toggle", dependencies=[Depends(verify_api_token)])
async def toggle_webhook(webhook_id: str):
    webhook = await get_service().toggle_webhook(webhook_id)
    return webhook.to_dict()


@router.delete("/webhooks/{webhook_id}", dependencies=[Depends(verify_api_token)])
async def delete_webhook(webhook_id: str):
    await get_service().delete_webhook(webhook_id)
    return {"success": True}


@router.post("/send", dependencies=[Depends(verify_api_token)])
async def send_message(body: SendMessageRequest):
    try:
        result = await get_service().send_message(body.account_id, body.number, body.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()


@router.post("/send-media", dependencies=[Depends(verify_api_token)])
async def send_media(body: SendMediaRequest):
    if not body.media.data and not body.media.url:
        raise HTTPException(status_code=400, detail="media must include either data (base64) or url")
    try:
        result = await get_service().send_media(
            body.account_id,
            body.number,
            body.media.model_dump(),
            body.caption,
            body.options,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()


@router.get("/stats", dependencies=[Depends(verify_api_token)])
async def get_stats():
    return await get_service().get_stats()
