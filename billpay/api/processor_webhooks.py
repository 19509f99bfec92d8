"""
Payment processor webhook.

The processor posts terminal outcomes here:

    {"processor_reference": "ach_PAY-...", "status": "completed"}
    {"processor_reference": "ach_PAY-...", "status": "failed", "reason": "account closed"}

Deliveries are at-least-once; a repeated outcome returns ``replay: true``.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from billpay.di.container import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


@router.post("/payment-processor")
async def payment_processor_webhook(
    request: Request,
    x_processor_signature: Optional[str] = Header(None, alias="X-Processor-Signature"),
    services: ServiceContainer = Depends(get_container),
):
    body = await request.body()

    secret = services.config().webhook_secret
    if secret and not verify_signature(body, x_processor_signature, secret):
        logger.warning("Rejected processor webhook with missing or invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object")

    reference = payload.get("processor_reference") or payload.get("reference")
    outcome = payload.get("status") or payload.get("outcome")
    if not reference or not outcome:
        raise HTTPException(status_code=400, detail="processor_reference and status are required")

    logger.info("Processor webhook: %s -> %s", reference, outcome)
    return await asyncio.to_thread(services.reconciler().reconcile, reference, outcome, payload.get("reason"))
