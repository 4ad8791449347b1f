"""Credit balance endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from metergate_api.dependencies import CurrentUserDep, SessionDep
from metergate_api.schemas import CreditBalanceResponse, CreditLotResponse
from metergate_core.ledger.credit_ledger import CreditLedger

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/balance", response_model=CreditBalanceResponse)
async def credit_balance(session: SessionDep, user_id: CurrentUserDep) -> CreditBalanceResponse:
    """Return the spendable balance and active lots, oldest first."""
    ledger = CreditLedger(session, user_id)
    balance = await ledger.balance()
    lots = await ledger.lots()
    return CreditBalanceResponse(
        balance=balance,
        lots=[
            CreditLotResponse(
                id=lot.id,
                amount_original=lot.amount_original,
                amount_remaining=lot.amount_remaining,
                source=lot.source,
                created_at=lot.created_at,
                expires_at=lot.expires_at,
            )
            for lot in lots
        ],
    )
