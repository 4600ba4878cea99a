from __future__ import annotations

import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request

from app.api.deps import get_container
from app.core.container import Container

logger = logging.getLogger(__name__)

router = APIRouter()


def _verify_stripe_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    sig = (signature or "").strip()
    if not sig:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature")
    try:
        stripe.Webhook.construct_event(raw_body, sig, secret)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, container: Container = Depends(get_container)) -> dict:
    raw_body = await request.body()
    secret = container.settings.stripe_webhook_secret
    if secret:
        _verify_stripe_signature(raw_body, request.headers.get("stripe-signature"), secret)
    elif container.settings.is_production:
        raise HTTPException(status_code=500, detail="STRIPE_WEBHOOK_SECRET is not configured")

    try:
        event = json.loads(raw_body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    result = await container.payments.handle(event)
    logger.info(
        "billing.webhook event_type=%s event_id=%s handled=%s duplicate=%s",
        event.get("type"),
        event.get("id"),
        result.get("handled"),
        result.get("duplicate"),
    )
    return result
