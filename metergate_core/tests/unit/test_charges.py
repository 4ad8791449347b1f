"""Tests for metergate_core.gate.charges."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metergate_core.errors import PersistenceFailure
from metergate_core.gate.charges import ChargeCommitter, ChargeOutcome
from metergate_core.ledger.credit_ledger import CreditLedger
from metergate_core.ledger.job_registry import ChargeMode, ChargeState, Job, JobRegistry
from metergate_core.ledger.quota_ledger import QuotaLedger
from metergate_core.state.tables import CreditEventTable, JobTable

_USER = "user-1"


async def _succeeded_job(
    factory: async_sessionmaker[AsyncSession],
    *,
    feature: str = "summary",
    key: str = "k1",
    mode: ChargeMode = ChargeMode.FREE,
    amount: int = 1,
) -> str:
    async with factory.begin() as session:
        registry = JobRegistry(session, _USER)
        job, _ = await registry.get_or_create(feature, key, {})
        await registry.mark_succeeded(job.id, {"ok": True}, charge_mode=mode, charge_amount=amount)
    return job.id


async def _job(factory: async_sessionmaker[AsyncSession], job_id: str) -> Job:
    async with factory() as session:
        job = await JobRegistry(session, _USER).get_by_id(job_id)
    assert job is not None
    return job


class _BrokenCommitter(ChargeCommitter):
    async def _mutate_ledger(self, session: AsyncSession, job: Job) -> None:
        raise PersistenceFailure("ledger unavailable")


class TestApply:
    @pytest.mark.asyncio
    async def test_free_charge_commits_quota(self, session_factory) -> None:
        job_id = await _succeeded_job(session_factory)

        outcome = await ChargeCommitter(session_factory).apply(job_id)

        assert outcome is ChargeOutcome.APPLIED
        async with session_factory() as session:
            assert await QuotaLedger(session, _USER).usage("summary") == 1
        assert (await _job(session_factory, job_id)).charge_state is ChargeState.APPLIED

    @pytest.mark.asyncio
    async def test_credit_charge_consumes_lots(self, session_factory) -> None:
        async with session_factory.begin() as session:
            await CreditLedger(session, _USER).add_lot(10)
        job_id = await _succeeded_job(session_factory, feature="essay", mode=ChargeMode.CREDIT, amount=7)

        assert await ChargeCommitter(session_factory).apply(job_id) is ChargeOutcome.APPLIED

        async with session_factory() as session:
            assert await CreditLedger(session, _USER).balance() == 3
            events = (
                await session.execute(select(CreditEventTable).where(CreditEventTable.kind == "consume"))
            ).scalars().all()
        assert [(e.job_id, e.amount, e.reason) for e in events] == [(job_id, 7, "feature:essay")]

    @pytest.mark.asyncio
    async def test_unlimited_charge_leaves_quota_untouched(self, session_factory) -> None:
        job_id = await _succeeded_job(session_factory, mode=ChargeMode.UNLIMITED, amount=1)

        assert await ChargeCommitter(session_factory).apply(job_id) is ChargeOutcome.APPLIED

        async with session_factory() as session:
            assert await QuotaLedger(session, _USER).usage("summary") == 0

    @pytest.mark.asyncio
    async def test_second_apply_is_noop(self, session_factory) -> None:
        job_id = await _succeeded_job(session_factory)
        committer = ChargeCommitter(session_factory)

        await committer.apply(job_id)
        assert await committer.apply(job_id) is ChargeOutcome.ALREADY_SETTLED

        async with session_factory() as session:
            assert await QuotaLedger(session, _USER).usage("summary") == 1

    @pytest.mark.asyncio
    async def test_missing_credit_recorded_as_shortfall(self, session_factory) -> None:
        async with session_factory.begin() as session:
            await CreditLedger(session, _USER).add_lot(2)
        job_id = await _succeeded_job(session_factory, feature="essay", mode=ChargeMode.CREDIT, amount=7)

        assert await ChargeCommitter(session_factory).apply(job_id) is ChargeOutcome.SHORTFALL

        job = await _job(session_factory, job_id)
        assert job.charge_state is ChargeState.SHORTFALL
        async with session_factory() as session:
            assert await CreditLedger(session, _USER).balance() == 2

    @pytest.mark.asyncio
    async def test_ledger_error_defers_then_fails(self, session_factory) -> None:
        job_id = await _succeeded_job(session_factory)
        committer = _BrokenCommitter(session_factory, max_attempts=2)

        assert await committer.apply(job_id) is ChargeOutcome.DEFERRED
        deferred = await _job(session_factory, job_id)
        assert deferred.charge_state is ChargeState.PENDING
        assert deferred.charge_attempts == 1
        assert deferred.charge_error == "ledger unavailable"

        assert await committer.apply(job_id) is ChargeOutcome.FAILED
        failed = await _job(session_factory, job_id)
        assert failed.charge_state is ChargeState.FAILED
        assert failed.charge_attempts == 2

        async with session_factory() as session:
            assert await QuotaLedger(session, _USER).usage("summary") == 0


class TestDrainPending:
    @pytest.mark.asyncio
    async def test_drains_only_aged_pending_charges(self, session_factory) -> None:
        old_id = await _succeeded_job(session_factory, key="old")
        fresh_id = await _succeeded_job(session_factory, key="fresh")
        async with session_factory.begin() as session:
            await session.execute(
                update(JobTable)
                .where(JobTable.id == old_id)
                .values(updated_at=datetime.now(UTC) - timedelta(minutes=5))
            )

        drained = await ChargeCommitter(session_factory).drain_pending(min_age=timedelta(seconds=30))

        assert drained == {"applied": 1}
        assert (await _job(session_factory, old_id)).charge_state is ChargeState.APPLIED
        assert (await _job(session_factory, fresh_id)).charge_state is ChargeState.PENDING

    @pytest.mark.asyncio
    async def test_empty_outbox(self, session_factory) -> None:
        assert await ChargeCommitter(session_factory).drain_pending() == {}
