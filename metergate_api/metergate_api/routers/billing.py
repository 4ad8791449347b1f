"""Stripe webhook for credit purchases."""

from __future__ import annotations

import json
import logging
from typing import Any

import stripe
from fastapi import APIRouter, HTTPException, Request

from metergate_api.dependencies import SessionDep, SettingsDep
from metergate_api.services.payment_service import CreditPurchaseService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    session: SessionDep,
) -> dict[str, Any]:
    """Handle Stripe webhook events.

    Authenticated by the Stripe signature rather than a bearer token.
    """
    if not settings.billing_enabled:
        return {"status": "billing_disabled"}

    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    try:
        stripe.Webhook.construct_event(
            payload=body,
            sig_header=sig_header,
            secret=settings.stripe_webhook_secret.get_secret_value(),
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail="Signature verification failed")

    # The signature covers the raw body; process it as plain JSON.
    event = json.loads(body)
    service = CreditPurchaseService(session, lot_expiry_days=settings.lot_expiry_days or None)
    return await service.handle_webhook_event(event)
