"""Feature gate: the state machine in front of every metered execution.

``FeatureGate.execute`` composes the job registry, quota ledger, credit
ledger and generation worker:

1. **Dedupe** -- insert-or-fetch the job for ``(user, feature, key)``.
   A succeeded job replays its stored result; a running one reports
   in-progress; a failed or blocked one is restarted under the same key.
2. **Decide** -- unlimited plan, then free quota, then (with an explicit
   confirmation) a fresh credit balance check.  Shortfalls park the job
   as ``blocked`` and return a structured outcome with the exact amounts.
3. **Execute** -- the worker runs with no transaction open and no lock
   held, bounded by ``worker_timeout``.
4. **Finalize** -- on success the result and the charge owed are written
   in one row update, then :class:`ChargeCommitter` settles the charge.
   On failure the job is marked failed and nothing is charged.

Every phase runs in its own short transaction.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metergate_core.errors import InvalidRequest, PersistenceFailure, Unauthenticated, WorkerFailure
from metergate_core.features.catalog import FeatureCatalog, FeatureCost, PlanTier
from metergate_core.gate.charges import ChargeCommitter, ChargeOutcome
from metergate_core.gate.worker import GenerationWorker
from metergate_core.ledger.credit_ledger import CreditLedger
from metergate_core.ledger.job_registry import ChargeMode, Job, JobRegistry, JobStatus
from metergate_core.ledger.quota_ledger import QuotaLedger

logger = logging.getLogger(__name__)

_IDEMPOTENCY_KEY_RE = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")

# Quota-mode charges count one execution.
_QUOTA_UNITS = 1


# ---------------------------------------------------------------------------
# Commands and outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecuteCommand:
    """One metered execution request.

    ``confirm_charge`` is the caller's one-shot consent to pay with
    credit.  It is never stored: a retry must carry it again.
    """

    user_id: str
    feature: str
    idempotency_key: str
    request: dict[str, Any] = field(default_factory=dict)
    confirm_charge: bool = False
    plan: PlanTier = PlanTier.FREE


@dataclass(frozen=True)
class Succeeded:
    job_id: str
    result: dict[str, Any]
    replayed: bool = False
    charge: ChargeOutcome | None = None


@dataclass(frozen=True)
class InProgress:
    job_id: str


@dataclass(frozen=True)
class NeedConfirmation:
    job_id: str
    required_credit: int


@dataclass(frozen=True)
class NeedCredit:
    job_id: str
    required_credit: int
    balance: int


@dataclass(frozen=True)
class Failed:
    job_id: str
    error_code: str
    error_message: str | None = None


GateOutcome = Union[Succeeded, InProgress, NeedConfirmation, NeedCredit, Failed]


class ProbeMode(str, Enum):
    UNLIMITED = "unlimited"
    FREE = "free"
    NEED_CREDIT = "need_credit"


@dataclass(frozen=True)
class QuotaProbe:
    """Non-consuming answer to "what would running this feature cost now?"."""

    mode: ProbeMode
    used: int
    limit: int
    balance: int
    required_credit: int | None = None


@dataclass(frozen=True)
class _Admitted:
    job: Job
    charge_mode: ChargeMode
    charge_amount: int


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class FeatureGate:
    """Orchestrates metered executions for every feature in the catalog.

    Parameters
    ----------
    session_factory:
        Factory for the short per-phase transactions.
    worker:
        The generation worker performing the expensive operation.
    catalog:
        Feature costs and unlimited tiers.
    running_ttl:
        Age after which a ``running`` job may be taken over by a new
        attempt under the same key.
    worker_timeout:
        Seconds allowed for a single worker call.
    charge_committer:
        Settles charges after success.  Defaults to one built on
        *session_factory*.
    max_request_bytes:
        Upper bound on the serialised request payload.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        worker: GenerationWorker,
        catalog: FeatureCatalog,
        *,
        running_ttl: timedelta = timedelta(minutes=15),
        worker_timeout: float = 120.0,
        charge_committer: ChargeCommitter | None = None,
        max_request_bytes: int = 256 * 1024,
    ) -> None:
        self._session_factory = session_factory
        self._worker = worker
        self._catalog = catalog
        self._running_ttl = running_ttl
        self._worker_timeout = worker_timeout
        self._charges = charge_committer or ChargeCommitter(session_factory)
        self._max_request_bytes = max_request_bytes

    @property
    def catalog(self) -> FeatureCatalog:
        return self._catalog

    # -- Validation -----------------------------------------------------------

    def _validate(self, command: ExecuteCommand) -> FeatureCost:
        if not command.user_id:
            raise Unauthenticated("No authenticated user")
        cost = self._catalog.get(command.feature)
        if not isinstance(command.idempotency_key, str) or not _IDEMPOTENCY_KEY_RE.match(command.idempotency_key):
            raise InvalidRequest("Idempotency key must be 1-128 characters of [A-Za-z0-9._:-]")
        if not isinstance(command.request, dict):
            raise InvalidRequest("Request payload must be a JSON object")
        try:
            encoded = json.dumps(command.request, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise InvalidRequest("Request payload is not JSON-serialisable") from exc
        if len(encoded.encode("utf-8")) > self._max_request_bytes:
            raise InvalidRequest(f"Request payload exceeds {self._max_request_bytes} bytes")
        return cost

    # -- Execute --------------------------------------------------------------

    async def execute(self, command: ExecuteCommand) -> GateOutcome:
        """Run one metered execution through dedupe, decide, execute and finalize.

        Raises
        ------
        Unauthenticated
            If the command carries no user id.
        InvalidRequest
            If the feature, key or payload is malformed.
        PersistenceFailure
            If the job could not be created, or the result could not be
            made durable.  Nothing is charged in either case.
        """
        cost = self._validate(command)

        try:
            async with self._session_factory.begin() as session:
                admission = await self._admit(session, command, cost)
        except SQLAlchemyError as exc:
            logger.error("Admission failed user=%s feature=%s", command.user_id, command.feature, exc_info=True)
            raise PersistenceFailure("Could not record job") from exc

        if not isinstance(admission, _Admitted):
            return admission

        job = admission.job
        logger.info(
            "Executing job=%s user=%s feature=%s mode=%s attempt=%d",
            job.id,
            job.user_id,
            job.feature,
            admission.charge_mode.value,
            job.attempts,
        )

        try:
            result = await asyncio.wait_for(
                self._worker.generate(job.feature, job.request),
                timeout=self._worker_timeout,
            )
        except TimeoutError:
            return await self._finalize_failure(job, "worker_timeout", f"Worker exceeded {self._worker_timeout}s")
        except WorkerFailure as exc:
            return await self._finalize_failure(job, exc.code, exc.message or None)
        except Exception as exc:
            logger.error("Worker raised unexpectedly for job=%s", job.id, exc_info=True)
            return await self._finalize_failure(job, "worker_error", type(exc).__name__)

        if not isinstance(result, dict):
            return await self._finalize_failure(job, "invalid_worker_result", "Worker result is not a JSON object")

        return await self._finalize_success(admission, result)

    async def _admit(
        self,
        session: AsyncSession,
        command: ExecuteCommand,
        cost: FeatureCost,
    ) -> GateOutcome | _Admitted:
        registry = JobRegistry(session, command.user_id)
        job, created = await registry.get_or_create(command.feature, command.idempotency_key, command.request)

        if not created:
            if job.status is JobStatus.SUCCEEDED:
                logger.info("Replaying job=%s user=%s", job.id, job.user_id)
                return Succeeded(job_id=job.id, result=job.result or {}, replayed=True)

            if job.status is JobStatus.RUNNING:
                if not (job.is_stale(self._running_ttl) and await registry.reclaim_stale(job, self._running_ttl)):
                    return InProgress(job_id=job.id)
            elif not await registry.restart(job):
                current = await registry.get_by_id(job.id)
                if current is not None and current.status is JobStatus.SUCCEEDED:
                    return Succeeded(job_id=current.id, result=current.result or {}, replayed=True)
                return InProgress(job_id=job.id)

            job = await registry.get_by_id(job.id) or job

        if self._catalog.is_unlimited(command.plan):
            return _Admitted(job=job, charge_mode=ChargeMode.UNLIMITED, charge_amount=0)

        quota = await QuotaLedger(session, command.user_id, self._catalog).check(command.feature)
        if quota.within_quota:
            return _Admitted(job=job, charge_mode=ChargeMode.FREE, charge_amount=_QUOTA_UNITS)

        if not command.confirm_charge:
            await registry.mark_blocked(job.id, "need_confirmation")
            return NeedConfirmation(job_id=job.id, required_credit=cost.credit_cost)

        balance = await CreditLedger(session, command.user_id).balance()
        if balance < cost.credit_cost:
            await registry.mark_blocked(
                job.id,
                "need_credit",
                f"required={cost.credit_cost} balance={balance}",
            )
            return NeedCredit(job_id=job.id, required_credit=cost.credit_cost, balance=balance)

        return _Admitted(job=job, charge_mode=ChargeMode.CREDIT, charge_amount=cost.credit_cost)

    async def _finalize_success(self, admission: _Admitted, result: dict[str, Any]) -> GateOutcome:
        job = admission.job
        try:
            async with self._session_factory.begin() as session:
                registry = JobRegistry(session, job.user_id)
                won = await registry.mark_succeeded(
                    job.id,
                    result,
                    charge_mode=admission.charge_mode,
                    charge_amount=admission.charge_amount,
                )
                current = None if won else await registry.get_by_id(job.id)
        except SQLAlchemyError as exc:
            logger.error("Result for job=%s could not be persisted; nothing charged", job.id, exc_info=True)
            raise PersistenceFailure(f"Result of job {job.id} was not persisted") from exc

        if not won:
            if current is not None and current.status is JobStatus.SUCCEEDED:
                logger.info("Job=%s already succeeded in another attempt; replaying", job.id)
                return Succeeded(job_id=job.id, result=current.result or {}, replayed=True)
            logger.warning(
                "Job=%s left running state during execution (now %s); result discarded",
                job.id,
                current.status.value if current else "missing",
            )
            return InProgress(job_id=job.id)

        if admission.charge_amount == 0:
            return Succeeded(job_id=job.id, result=result, replayed=False)
        charge = await self._charges.apply(job.id)
        return Succeeded(job_id=job.id, result=result, replayed=False, charge=charge)

    async def _finalize_failure(self, job: Job, error_code: str, error_message: str | None) -> GateOutcome:
        logger.warning("Job=%s failed: %s %s", job.id, error_code, error_message or "")
        try:
            async with self._session_factory.begin() as session:
                registry = JobRegistry(session, job.user_id)
                marked = await registry.mark_failed(job.id, error_code, error_message)
                current = None if marked else await registry.get_by_id(job.id)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failure of job {job.id} was not recorded") from exc

        if current is not None and current.status is JobStatus.SUCCEEDED:
            return Succeeded(job_id=job.id, result=current.result or {}, replayed=True)
        return Failed(job_id=job.id, error_code=error_code, error_message=error_message)

    # -- Read-only queries ----------------------------------------------------

    async def probe(self, user_id: str, feature: str, plan: PlanTier = PlanTier.FREE) -> QuotaProbe:
        """Report how an execution of *feature* would be paid for.  No side effects."""
        if not user_id:
            raise Unauthenticated("No authenticated user")
        cost = self._catalog.get(feature)

        async with self._session_factory() as session:
            quota = await QuotaLedger(session, user_id, self._catalog).check(feature)
            balance = await CreditLedger(session, user_id).balance()

        if self._catalog.is_unlimited(plan):
            mode = ProbeMode.UNLIMITED
        elif quota.within_quota:
            mode = ProbeMode.FREE
        else:
            mode = ProbeMode.NEED_CREDIT
        return QuotaProbe(
            mode=mode,
            used=quota.used,
            limit=quota.limit,
            balance=balance,
            required_credit=cost.credit_cost if mode is ProbeMode.NEED_CREDIT else None,
        )

    async def job_status(self, user_id: str, feature: str, idempotency_key: str) -> Job | None:
        """Return the job recorded for the key, or ``None``."""
        if not user_id:
            raise Unauthenticated("No authenticated user")
        self._catalog.get(feature)
        async with self._session_factory() as session:
            return await JobRegistry(session, user_id).get(feature, idempotency_key)
