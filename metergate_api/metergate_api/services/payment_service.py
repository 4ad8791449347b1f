"""Credit purchases from Stripe checkout events.

A completed one-time checkout (``checkout.session.completed`` with mode
``payment``) grants a credit lot.  The payment intent id is stored as the
lot's external reference, so a redelivered event never grants twice.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from metergate_core.ledger.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)


def _parse_amount(raw: Any) -> int | None:
    try:
        amount = int(str(raw))
    except (TypeError, ValueError):
        return None
    return amount if amount > 0 else None


class CreditPurchaseService:
    """Apply Stripe payment events to the credit ledger.

    Parameters
    ----------
    session:
        Active database session; the caller commits.
    lot_expiry_days:
        Validity of granted lots; ``None`` for no expiry.
    """

    def __init__(self, session: AsyncSession, *, lot_expiry_days: int | None = None) -> None:
        self._session = session
        self._lot_expiry_days = lot_expiry_days

    async def handle_webhook_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Process a verified Stripe event.

        Returns
        -------
        dict
            ``status`` is ``processed``, ``duplicate`` or ``ignored``.
        """
        event_type = event.get("type", "")
        data_object = event.get("data", {}).get("object", {}) or {}

        if event_type != "checkout.session.completed":
            logger.debug("Unhandled Stripe event type: %s", event_type)
            return {"status": "ignored"}

        if data_object.get("mode") != "payment":
            return {"status": "ignored", "reason": "not_a_payment"}

        metadata = data_object.get("metadata") or {}
        user_id = metadata.get("user_id") or data_object.get("client_reference_id")
        amount = _parse_amount(metadata.get("credit_amount"))
        if not user_id or amount is None:
            logger.warning(
                "Checkout session %s lacks user_id or a positive credit_amount; skipping",
                data_object.get("id"),
            )
            return {"status": "ignored", "reason": "missing_metadata"}

        external_ref = data_object.get("payment_intent") or data_object.get("id")
        ledger = CreditLedger(self._session, str(user_id), lot_expiry_days=self._lot_expiry_days)
        grant = await ledger.add_lot(amount, source="stripe", external_ref=external_ref)

        if not grant.created:
            logger.info("Payment %s already granted as lot=%s", external_ref, grant.lot.id)
            return {"status": "duplicate", "lot_id": grant.lot.id}

        logger.info("Granted %d credit(s) to user=%s from payment %s", amount, user_id, external_ref)
        return {"status": "processed", "lot_id": grant.lot.id}
