"""Metered execution endpoint.

Maps :class:`FeatureGate` outcomes to HTTP:

* ``Succeeded`` -> 200 with the result (``replayed`` for stored results)
* ``NeedConfirmation`` / ``NeedCredit`` -> 402 with the exact amounts
* ``InProgress`` -> 409
* ``Failed`` -> 500 ``generation_failed``; retry with the same key
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Header
from fastapi.responses import JSONResponse

from metergate_api.dependencies import CurrentUserDep, GateDep, PlanDep
from metergate_api.schemas import (
    ErrorResponse,
    ExecuteRequest,
    ExecuteResponse,
    GenerationFailedResponse,
    NeedConfirmationResponse,
    NeedCreditResponse,
    RunningResponse,
)
from metergate_core.errors import InvalidRequest
from metergate_core.gate.feature_gate import (
    ExecuteCommand,
    Failed,
    InProgress,
    NeedConfirmation,
    NeedCredit,
    Succeeded,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["execute"])

_CONFIRM_VALUES = frozenset({"1", "true", "yes"})


@router.post(
    "/execute",
    response_model=ExecuteResponse,
    responses={
        400: {"model": ErrorResponse},
        402: {"model": NeedCreditResponse},
        409: {"model": RunningResponse},
        500: {"model": GenerationFailedResponse},
    },
)
async def execute(
    body: ExecuteRequest,
    gate: GateDep,
    user_id: CurrentUserDep,
    plan: PlanDep,
    idempotency_key: str | None = Header(default=None),
    confirm_charge: str | None = Header(default=None),
) -> ExecuteResponse | JSONResponse:
    """Run a metered feature once per ``Idempotency-Key``.

    ``Confirm-Charge: 1`` authorises paying with credit for this request
    only.
    """
    if not idempotency_key:
        raise InvalidRequest("Missing Idempotency-Key header")

    outcome = await gate.execute(
        ExecuteCommand(
            user_id=user_id,
            feature=body.feature,
            idempotency_key=idempotency_key,
            request=body.request_payload,
            confirm_charge=(confirm_charge or "").strip().lower() in _CONFIRM_VALUES,
            plan=plan,
        )
    )

    if isinstance(outcome, Succeeded):
        return ExecuteResponse(job_id=outcome.job_id, result=outcome.result, replayed=outcome.replayed)

    if isinstance(outcome, NeedConfirmation):
        need_confirmation = NeedConfirmationResponse(job_id=outcome.job_id, required_credit=outcome.required_credit)
        return JSONResponse(status_code=402, content=need_confirmation.to_json_body())

    if isinstance(outcome, NeedCredit):
        need_credit = NeedCreditResponse(
            job_id=outcome.job_id,
            required_credit=outcome.required_credit,
            balance=outcome.balance,
        )
        return JSONResponse(status_code=402, content=need_credit.to_json_body())

    if isinstance(outcome, InProgress):
        return JSONResponse(status_code=409, content=RunningResponse(job_id=outcome.job_id).to_json_body())

    if isinstance(outcome, Failed):
        failed = GenerationFailedResponse(job_id=outcome.job_id, error_code=outcome.error_code)
        return JSONResponse(status_code=500, content=failed.to_json_body())

    raise TypeError(f"Unhandled gate outcome {outcome!r}")
