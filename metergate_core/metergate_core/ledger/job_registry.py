"""Idempotent registry of metered executions.

One row per ``(user, feature, idempotency_key)``.  Creation is an
insert-if-absent arbitrated by the unique constraint; every later status
change is a conditional update guarded by the expected prior status, so
concurrent attempts on the same key agree on a single winner.

Status lifecycle::

    running ──► succeeded          (terminal, result immutable)
       │  └──► failed ──┐
       └────► blocked ──┴──► running   (guarded retry under the same key)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from metergate_core.errors import PersistenceFailure
from metergate_core.state.repository import JobRepository
from metergate_core.state.tables import JobTable

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"


class ChargeMode(str, Enum):
    """How a succeeded job is paid for."""

    FREE = "free"
    CREDIT = "credit"
    UNLIMITED = "unlimited"


class ChargeState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    APPLIED = "applied"
    SHORTFALL = "shortfall"
    FAILED = "failed"


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of a job row."""

    id: str
    user_id: str
    feature: str
    idempotency_key: str
    status: JobStatus
    request: dict[str, Any]
    result: dict[str, Any] | None
    error_code: str | None
    error_message: str | None
    attempts: int
    charge_mode: ChargeMode | None
    charge_amount: int
    charge_state: ChargeState
    charge_attempts: int
    charge_error: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_row(cls, row: JobTable) -> Job:
        return cls(
            id=row.id,
            user_id=row.user_id,
            feature=row.feature,
            idempotency_key=row.idempotency_key,
            status=JobStatus(row.status),
            request=dict(row.request_json or {}),
            result=row.result_json,
            error_code=row.error_code,
            error_message=row.error_message,
            attempts=row.attempts,
            charge_mode=ChargeMode(row.charge_mode) if row.charge_mode else None,
            charge_amount=row.charge_amount,
            charge_state=ChargeState(row.charge_state),
            charge_attempts=row.charge_attempts,
            charge_error=row.charge_error,
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
        )

    def is_stale(self, ttl: timedelta, now: datetime | None = None) -> bool:
        """Return ``True`` if a running job has not been touched within *ttl*."""
        now = now or datetime.now(UTC)
        return self.status is JobStatus.RUNNING and self.updated_at < now - ttl


class JobRegistry:
    """Jobs of a single user.

    Parameters
    ----------
    session:
        Active database session; the caller owns the transaction.
    user_id:
        The user whose jobs are created and transitioned.
    """

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._repo = JobRepository(session, user_id)
        self._user_id = user_id

    async def get_or_create(
        self,
        feature: str,
        idempotency_key: str,
        request: dict[str, Any],
    ) -> tuple[Job, bool]:
        """Return the job for the key, creating a ``running`` one if absent.

        Returns
        -------
        tuple[Job, bool]
            The job and whether this call created it.
        """
        created = await self._repo.insert_if_absent(feature, idempotency_key, request)
        row = await self._repo.get(feature, idempotency_key)
        if row is None:
            raise PersistenceFailure(f"Job for key={idempotency_key!r} missing after insert (user={self._user_id})")
        if created:
            logger.debug("Created job %s user=%s feature=%s", row.id, self._user_id, feature)
        return Job.from_row(row), created

    async def get(self, feature: str, idempotency_key: str) -> Job | None:
        row = await self._repo.get(feature, idempotency_key)
        return Job.from_row(row) if row is not None else None

    async def get_by_id(self, job_id: str) -> Job | None:
        row = await self._repo.get_by_id(job_id)
        return Job.from_row(row) if row is not None else None

    async def restart(self, job: Job) -> bool:
        """Move a ``failed`` or ``blocked`` job back to ``running``.

        Returns ``False`` if another attempt already moved it.
        """
        won = await self._repo.restart(job.id)
        if won:
            logger.info("Restarted job %s (was %s) user=%s", job.id, job.status.value, self._user_id)
        return won

    async def reclaim_stale(self, job: Job, ttl: timedelta, *, now: datetime | None = None) -> bool:
        """Take over a ``running`` job whose last update is older than *ttl*."""
        now = now or datetime.now(UTC)
        won = await self._repo.reclaim_stale(job.id, now - ttl)
        if won:
            logger.warning(
                "Reclaimed stale running job %s user=%s feature=%s (last update %s)",
                job.id,
                self._user_id,
                job.feature,
                job.updated_at.isoformat(),
            )
        return won

    async def mark_succeeded(
        self,
        job_id: str,
        result: dict[str, Any],
        *,
        charge_mode: ChargeMode,
        charge_amount: int,
    ) -> bool:
        """Store the result and the charge owed; ``False`` if the job was not running."""
        return await self._repo.mark_succeeded(
            job_id,
            result,
            charge_mode=charge_mode.value,
            charge_amount=charge_amount,
        )

    async def mark_failed(self, job_id: str, error_code: str, error_message: str | None = None) -> bool:
        return await self._repo.mark_failed(job_id, error_code, error_message)

    async def mark_blocked(self, job_id: str, reason: str, message: str | None = None) -> bool:
        return await self._repo.mark_blocked(job_id, reason, message)
