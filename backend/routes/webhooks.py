"""Webhook Routes - Stripe webhooks.

POST /api/webhook/stripe  - main endpoint
POST /api/webhooks/stripe - alias (Stripe may be configured with either URL)

Processed events always get a 200 so Stripe does not retry; only a payload
that fails signature verification is rejected with 400.
"""
from fastapi import APIRouter, Header, HTTPException, Request, status
from services.stripe_webhook_service import stripe_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, stripe_signature: str = None):
    payload = await request.body()
    success, message, details = await stripe_webhook_service.process_webhook(
        payload=payload,
        signature=stripe_signature or ""
    )
    if not success:
        logger.error(f"Webhook rejected: {message}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)
    return {"status": "received", "message": message, "details": details}


@router.post("/api/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/api/webhooks/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    return await _handle_stripe_webhook(request, stripe_signature)
