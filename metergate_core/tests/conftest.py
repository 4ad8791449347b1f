"""Shared fixtures for metering core tests.

Every test gets its own SQLite database file under ``tmp_path`` so ledger
and gate behaviour is exercised against real SQL, including the guarded
conditional updates and ``ON CONFLICT`` upserts.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from metergate_core.errors import WorkerFailure
from metergate_core.features.catalog import FeatureCatalog, FeatureCost
from metergate_core.state.sqlite_adapter import create_local_tables, get_local_engine

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    db_engine = get_local_engine(tmp_path / "metergate.db")
    await create_local_tables(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as db_session:
        yield db_session


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@pytest.fixture
def catalog() -> FeatureCatalog:
    """Small catalog: ``summary`` has 3 free uses, ``deep_dive`` costs 3 credits."""
    return FeatureCatalog(
        {
            "summary": FeatureCost(free_limit_per_period=3, credit_cost=1),
            "deep_dive": FeatureCost(free_limit_per_period=0, credit_cost=3),
            "essay": FeatureCost(free_limit_per_period=0, credit_cost=7),
        }
    )


# ---------------------------------------------------------------------------
# Fake generation worker
# ---------------------------------------------------------------------------


class FakeWorker:
    """Scriptable generation worker that records every call.

    ``outcomes`` is consumed in order; each entry is either a result dict
    or an exception instance to raise.  When exhausted, a default result
    echoing the request is returned.
    """

    def __init__(self, *outcomes: Any, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def generate(self, feature: str, request: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((feature, request))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return {"feature": feature, "echo": request, "n": len(self.calls)}


@pytest.fixture
def worker() -> FakeWorker:
    return FakeWorker()


@pytest.fixture
def failing_worker() -> FakeWorker:
    return FakeWorker(WorkerFailure("model_overloaded", "upstream busy"))


@pytest.fixture
def make_worker() -> type[FakeWorker]:
    """Return the :class:`FakeWorker` class for tests that script outcomes."""
    return FakeWorker
