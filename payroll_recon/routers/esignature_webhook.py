"""
Payroll Recon - E-Signature Webhook Router

Callback endpoint for Dropbox Sign (HelloSign) signature request events.

HelloSign posts either a JSON body or a multipart form with the event in
a ``json`` field, and only treats a callback as delivered when the
response body is exactly "Hello API Event Received".
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_recon.config import settings
from payroll_recon.database import get_async_session
from payroll_recon.services.esignature_provider import verify_hellosign_event_hash
from payroll_recon.services.receipt_dispatch_service import ReceiptDispatchService

logger = logging.getLogger(__name__)

router = APIRouter()

HELLOSIGN_ACK = "Hello API Event Received"


async def _read_payload(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        body = await request.body()
        return json.loads(body) if body else {}
    form = await request.form()
    raw = form.get("json")
    if not raw:
        return {}
    if not isinstance(raw, str):
        raw = (await raw.read()).decode("utf-8")
    return json.loads(raw)


@router.post(
    "/esignature/webhook",
    summary="HelloSign webhook handler",
    response_class=PlainTextResponse,
    include_in_schema=False,
)
async def hellosign_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_session),
):
    """
    Handle HelloSign signature request events.

    Security:
    - When HELLOSIGN_WEBHOOK_SECRET is set, event_hash must equal
      HMAC-SHA256(secret, event_time + event_type); otherwise 401
    - Uses constant-time comparison

    Malformed and irrelevant payloads are acknowledged so the provider
    stops retrying them.
    """
    try:
        payload = await _read_payload(request)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning(f"Unreadable e-signature webhook payload: {e}")
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    event = payload.get("event") or {}
    if not isinstance(event, dict):
        event = {}
    webhook_secret = settings.hellosign_webhook_secret
    if webhook_secret:
        if not verify_hellosign_event_hash(
            str(event.get("event_time", "")),
            str(event.get("event_type", "")),
            str(event.get("event_hash", "")),
            webhook_secret,
        ):
            logger.warning("E-signature webhook event hash verification failed")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature",
            )

    if not event.get("event_type"):
        logger.debug("E-signature webhook received with no event type")
        return PlainTextResponse(HELLOSIGN_ACK)

    # Account-level test callbacks carry no signature request
    if event.get("event_type") == "callback_test":
        logger.info("E-signature callback test received")
        return PlainTextResponse(HELLOSIGN_ACK)

    try:
        service = ReceiptDispatchService(db)
        result = await service.process_hellosign_webhook(payload)
        logger.debug(f"E-signature webhook result: {result}")
    except Exception as e:
        await db.rollback()
        logger.error(f"Webhook processing error: {e}", exc_info=True)

    return PlainTextResponse(HELLOSIGN_ACK)
