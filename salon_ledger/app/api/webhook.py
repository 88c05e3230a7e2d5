from __future__ import annotations

import logging
from typing import Any, Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from ..core.config import Settings, get_settings
from ..core.dependencies import get_gift_card_service
from ..services import GiftCardService


logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["stripe"])

# Events after which a card minted for the payment must stop being usable.
PAYMENT_REVERSAL_EVENTS = {
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "charge.refunded",
}


def _payment_intent_id(event: dict[str, Any]) -> Optional[str]:
    obj = event.get("data", {}).get("object", {})
    if event["type"].startswith("payment_intent."):
        return obj.get("id")
    return obj.get("payment_intent")


@webhook_router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    settings: Settings = Depends(get_settings),
    service: GiftCardService = Depends(get_gift_card_service),
) -> dict[str, Any]:
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhook is not configured",
        )
    if not stripe_signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing signature")

    payload = await request.body()
    try:
        event = stripe.Webhook.construct_event(
            payload, stripe_signature, settings.stripe_webhook_secret
        ).to_dict()
    except ValueError:
        logger.error("stripe.webhook.invalid_payload")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.error("stripe.webhook.bad_signature")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    event_type = event.get("type", "")
    if event_type not in PAYMENT_REVERSAL_EVENTS:
        # Acknowledge everything else so Stripe does not retry.
        return {"status": "ignored", "type": event_type}

    payment_intent_id = _payment_intent_id(event)
    if not payment_intent_id:
        logger.warning("stripe.webhook.missing_payment_intent", extra={"type": event_type})
        return {"status": "ignored", "type": event_type}

    cancelled = await run_in_threadpool(service.cancel_for_failed_payment, payment_intent_id)
    logger.info(
        "stripe.webhook.processed",
        extra={"type": event_type, "payment_intent_id": payment_intent_id, "cancelled": cancelled},
    )
    return {"status": "processed", "type": event_type, "cancelled": cancelled}
