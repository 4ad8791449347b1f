"""Background maintenance of the metering state.

Runs as an ``asyncio`` background task.  Each pass:

* drains the charge outbox (charges left ``pending`` by a failed inline
  settlement), and
* zeroes credit lots whose ``expires_at`` has passed.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metergate_core.gate.charges import ChargeCommitter
from metergate_core.ledger.credit_ledger import expire_due_lots

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """AsyncIO background task for charge reconciliation and lot expiry.

    Parameters
    ----------
    session_factory:
        Factory for the per-pass sessions.
    charge_committer:
        Settles pending charges.
    interval_seconds:
        Delay between passes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        charge_committer: ChargeCommitter,
        *,
        interval_seconds: float = 60.0,
    ) -> None:
        self._session_factory = session_factory
        self._charges = charge_committer
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("MaintenanceScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("MaintenanceScheduler started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("MaintenanceScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("MaintenanceScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("MaintenanceScheduler unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._interval)

    async def run_once(self, *, now: datetime | None = None) -> dict[str, Any]:
        """Run one maintenance pass and return what it did."""
        now = now or datetime.now(UTC)
        charges = await self._charges.drain_pending(now=now)

        async with self._session_factory.begin() as session:
            expiry = await expire_due_lots(session, now=now)

        if expiry.lots_expired:
            logger.info(
                "Expired %d lot(s) holding %d credit(s)",
                expiry.lots_expired,
                expiry.credits_expired,
            )
        return {
            "charges": charges,
            "lots_expired": expiry.lots_expired,
            "credits_expired": expiry.credits_expired,
        }
