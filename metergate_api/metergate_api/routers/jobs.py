"""Job status lookup by feature and idempotency key."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from metergate_api.dependencies import CurrentUserDep, GateDep
from metergate_api.schemas import JobStatusResponse

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/status", response_model=JobStatusResponse, response_model_exclude_none=True)
async def job_status(
    gate: GateDep,
    user_id: CurrentUserDep,
    feature: str = Query(..., min_length=1),
    key: str = Query(..., min_length=1, max_length=128),
) -> JobStatusResponse:
    """Return the status of the caller's job, including the stored result once succeeded."""
    job = await gate.job_status(user_id, feature, key)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse(
        job_id=job.id,
        feature=job.feature,
        status=job.status.value,
        result=job.result,
        error_code=job.error_code,
        error_message=job.error_message,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )
