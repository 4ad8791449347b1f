"""Exactly-once application of charges owed by succeeded jobs.

When a job succeeds the feature gate writes the result together with the
charge it owes (``charge_state = pending``).  :class:`ChargeCommitter`
settles that charge in a separate transaction that:

1. wins the guarded ``pending → applied`` transition of the job, and
2. increments the quota counter or consumes credit lots.

Both writes commit or roll back together, so a charge is applied at most
once no matter how many committers race on the same job.  A charge that
fails on a database error stays ``pending`` and is retried by
:meth:`ChargeCommitter.drain_pending` until ``max_attempts`` is reached.
A charge that finds too little credit (the balance was spent after the
gate admitted the job) is recorded as ``shortfall`` for follow-up.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import UTC, datetime, timedelta
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metergate_core.errors import InsufficientCredit, PersistenceFailure
from metergate_core.ledger.credit_ledger import CreditLedger
from metergate_core.ledger.job_registry import ChargeMode, ChargeState, Job
from metergate_core.ledger.quota_ledger import QuotaLedger
from metergate_core.state.repository import JobRepository

logger = logging.getLogger(__name__)


class ChargeOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_SETTLED = "already_settled"
    SHORTFALL = "shortfall"
    DEFERRED = "deferred"
    FAILED = "failed"


class ChargeCommitter:
    """Settles pending job charges.

    Parameters
    ----------
    session_factory:
        Factory producing a fresh session per settlement transaction.
    max_attempts:
        Failed attempts after which a charge is parked as ``failed``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 5,
    ) -> None:
        self._session_factory = session_factory
        self._max_attempts = max_attempts

    async def apply(self, job_id: str) -> ChargeOutcome:
        """Settle the pending charge of *job_id*.

        Never raises for ledger or database errors; the outcome tells the
        caller what happened and failures are recorded on the job.
        """
        job: Job | None = None
        try:
            async with self._session_factory.begin() as session:
                repo = JobRepository(session)
                row = await repo.get_by_id(job_id)
                if row is None:
                    raise PersistenceFailure(f"Job {job_id} not found")
                job = Job.from_row(row)
                if job.charge_state is not ChargeState.PENDING:
                    return ChargeOutcome.ALREADY_SETTLED
                if not await repo.claim_charge(job_id):
                    return ChargeOutcome.ALREADY_SETTLED
                await self._mutate_ledger(session, job)
        except InsufficientCredit as exc:
            await self._record_failure(job_id, ChargeState.SHORTFALL, str(exc))
            logger.error(
                "Charge shortfall job=%s user=%s feature=%s required=%d balance=%d",
                job_id,
                job.user_id if job else "?",
                job.feature if job else "?",
                exc.required,
                exc.balance,
            )
            return ChargeOutcome.SHORTFALL
        except (PersistenceFailure, SQLAlchemyError) as exc:
            attempts = (job.charge_attempts if job else 0) + 1
            if attempts >= self._max_attempts:
                await self._record_failure(job_id, ChargeState.FAILED, str(exc))
                logger.critical(
                    "Charge for job=%s abandoned after %d attempt(s): %s",
                    job_id,
                    attempts,
                    exc,
                    exc_info=True,
                )
                return ChargeOutcome.FAILED
            await self._record_failure(job_id, ChargeState.PENDING, str(exc))
            logger.warning("Charge for job=%s deferred (attempt %d): %s", job_id, attempts, exc)
            return ChargeOutcome.DEFERRED

        logger.info(
            "Charge applied job=%s user=%s feature=%s mode=%s amount=%d",
            job_id,
            job.user_id,
            job.feature,
            job.charge_mode.value if job.charge_mode else None,
            job.charge_amount,
        )
        return ChargeOutcome.APPLIED

    async def _mutate_ledger(self, session: AsyncSession, job: Job) -> None:
        if job.charge_mode is ChargeMode.CREDIT:
            ledger = CreditLedger(session, job.user_id)
            await ledger.consume(job.charge_amount, job_id=job.id, reason=f"feature:{job.feature}")
            return
        if job.charge_mode is not ChargeMode.FREE:
            return
        quota = QuotaLedger(session, job.user_id)
        await quota.commit(job.feature, at=job.completed_at)

    async def _record_failure(self, job_id: str, state: ChargeState, message: str) -> None:
        try:
            async with self._session_factory.begin() as session:
                await JobRepository(session).record_charge_error(job_id, state=state.value, message=message)
        except SQLAlchemyError:
            # The charge is still pending; the next drain retries it.
            logger.error("Could not record charge failure for job=%s", job_id, exc_info=True)

    async def drain_pending(
        self,
        *,
        limit: int = 100,
        min_age: timedelta = timedelta(seconds=30),
        now: datetime | None = None,
    ) -> dict[str, int]:
        """Settle pending charges that have waited at least *min_age*.

        Returns
        -------
        dict[str, int]
            Count of settlements per :class:`ChargeOutcome` value.
        """
        now = now or datetime.now(UTC)
        async with self._session_factory() as session:
            rows = await JobRepository(session).list_pending_charges(older_than=now - min_age, limit=limit)
            job_ids = [row.id for row in rows]

        outcomes: Counter[str] = Counter()
        for job_id in job_ids:
            outcome = await self.apply(job_id)
            outcomes[outcome.value] += 1

        if job_ids:
            logger.info("Drained %d pending charge(s): %s", len(job_ids), dict(outcomes))
        return dict(outcomes)
