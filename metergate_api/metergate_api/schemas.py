"""Pydantic request and response models for the API endpoints.

Bodies are camelCase on the wire; Python code uses snake_case field names.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_body(self) -> dict[str, Any]:
        """Dump for a hand-built ``JSONResponse``."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------


class QuotaCheckRequest(_CamelModel):
    feature: str


class QuotaCheckResponse(_CamelModel):
    """How an execution of the feature would be paid for right now."""

    mode: Literal["unlimited", "free", "need_credit"]
    used: int
    limit: int
    required_credit: int | None = None
    balance: int


# ---------------------------------------------------------------------------
# Execute
# ---------------------------------------------------------------------------


class ExecuteRequest(_CamelModel):
    feature: str
    request_payload: dict[str, Any] = Field(default_factory=dict)


class ExecuteResponse(_CamelModel):
    job_id: str
    result: dict[str, Any]
    replayed: bool = False


class NeedConfirmationResponse(_CamelModel):
    error: Literal["need_confirmation"] = "need_confirmation"
    job_id: str
    required_credit: int


class NeedCreditResponse(_CamelModel):
    error: Literal["need_credit"] = "need_credit"
    job_id: str
    required_credit: int
    balance: int


class RunningResponse(_CamelModel):
    status: Literal["running"] = "running"
    job_id: str


class GenerationFailedResponse(_CamelModel):
    error: Literal["generation_failed"] = "generation_failed"
    job_id: str
    error_code: str


class ErrorResponse(_CamelModel):
    error: str
    detail: str | None = None


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobStatusResponse(_CamelModel):
    job_id: str
    feature: str
    status: Literal["running", "succeeded", "failed", "blocked"]
    result: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class CreditLotResponse(_CamelModel):
    id: str
    amount_original: int
    amount_remaining: int
    source: str
    created_at: datetime
    expires_at: datetime | None = None


class CreditBalanceResponse(_CamelModel):
    """Spendable balance and the active lots in consumption order."""

    balance: int
    lots: list[CreditLotResponse] = Field(default_factory=list)
