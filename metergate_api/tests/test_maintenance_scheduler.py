"""Tests for the background maintenance scheduler."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from metergate_api.services.maintenance_scheduler import MaintenanceScheduler
from metergate_core.gate.charges import ChargeCommitter
from metergate_core.ledger.credit_ledger import CreditLedger


@pytest.fixture()
def scheduler(session_factory) -> MaintenanceScheduler:
    return MaintenanceScheduler(session_factory, ChargeCommitter(session_factory), interval_seconds=0.01)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_expires_due_lots(self, scheduler: MaintenanceScheduler, session_factory) -> None:
        now = datetime.now(UTC)
        async with session_factory.begin() as session:
            ledger = CreditLedger(session, "user-1")
            await ledger.add_lot(4, expires_at=now - timedelta(minutes=1))
            await ledger.add_lot(6, expires_at=now + timedelta(days=1))

        summary = await scheduler.run_once(now=now)

        assert summary == {"charges": {}, "lots_expired": 1, "credits_expired": 4}
        async with session_factory() as session:
            assert await CreditLedger(session, "user-1").balance(now=now) == 6

    @pytest.mark.asyncio
    async def test_idle_pass(self, scheduler: MaintenanceScheduler) -> None:
        assert await scheduler.run_once() == {"charges": {}, "lots_expired": 0, "credits_expired": 0}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler: MaintenanceScheduler) -> None:
        await scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_second_start_is_ignored(self, scheduler: MaintenanceScheduler) -> None:
        await scheduler.start()
        task = scheduler._task
        await scheduler.start()
        assert scheduler._task is task
        await scheduler.stop()
