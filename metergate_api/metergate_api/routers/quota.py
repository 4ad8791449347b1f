"""Side-effect-free quota probe."""

from __future__ import annotations

from fastapi import APIRouter

from metergate_api.dependencies import CurrentUserDep, GateDep, PlanDep
from metergate_api.schemas import QuotaCheckRequest, QuotaCheckResponse

router = APIRouter(prefix="/quota", tags=["quota"])


@router.post("/check", response_model=QuotaCheckResponse, response_model_exclude_none=True)
async def check_quota(
    body: QuotaCheckRequest,
    gate: GateDep,
    user_id: CurrentUserDep,
    plan: PlanDep,
) -> QuotaCheckResponse:
    """Report whether the next execution of a feature is unlimited, free or paid."""
    probe = await gate.probe(user_id, body.feature, plan)
    return QuotaCheckResponse(
        mode=probe.mode.value,
        used=probe.used,
        limit=probe.limit,
        required_credit=probe.required_credit,
        balance=probe.balance,
    )
