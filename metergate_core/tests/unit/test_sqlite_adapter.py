"""Tests for the SQLite adapter and the dialect-independent state helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import inspect, select, text

from metergate_core.state.database import (
    acquire_advisory_lock,
    advisory_lock_key,
    dialect_name,
    get_engine,
    get_session,
    get_session_factory,
)
from metergate_core.state.sqlite_adapter import (
    create_local_tables,
    get_local_engine,
    get_local_session,
)
from metergate_core.state.tables import CreditLotTable

# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------


class TestGetLocalEngine:
    """Verify SQLite engine creation."""

    def test_creates_in_memory_engine(self) -> None:
        engine = get_local_engine(":memory:")
        assert "sqlite" in str(engine.url)

    @pytest.mark.asyncio
    async def test_in_memory_tables_shared_across_connections(self) -> None:
        engine = get_local_engine(":memory:")
        await create_local_tables(engine)
        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        await engine.dispose()
        assert "jobs" in tables

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "deep" / "state.db"
        engine = get_local_engine(db_path)
        assert db_path.parent.exists()
        assert "state.db" in str(engine.url)

    def test_get_engine_dispatches_sqlite_urls(self, tmp_path: Path) -> None:
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
        assert engine.dialect.name == "sqlite"

    @pytest.mark.asyncio
    async def test_pragmas_applied(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "pragmas.db")
        async with engine.connect() as conn:
            journal = (await conn.execute(text("PRAGMA journal_mode"))).scalar_one()
            busy = (await conn.execute(text("PRAGMA busy_timeout"))).scalar_one()
        await engine.dispose()
        assert str(journal).lower() == "wal"
        assert int(busy) == 30000


# ---------------------------------------------------------------------------
# Table creation
# ---------------------------------------------------------------------------


class TestCreateLocalTables:
    @pytest.mark.asyncio
    async def test_creates_all_tables(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "tables.db")
        await create_local_tables(engine)
        async with engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        await engine.dispose()
        assert {"quota_counters", "credit_lots", "credit_events", "jobs"} <= names

    @pytest.mark.asyncio
    async def test_idempotent_creation(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "idem.db")
        await create_local_tables(engine)
        await create_local_tables(engine)
        await engine.dispose()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    @pytest.mark.asyncio
    async def test_local_session_commits_on_exit(self, engine) -> None:
        async with get_local_session(engine) as session:
            session.add(
                CreditLotTable(
                    id="lot-1",
                    user_id="user-1",
                    amount_original=5,
                    amount_remaining=5,
                    source="promo",
                )
            )
        async with get_local_session(engine) as session:
            lot = (await session.execute(select(CreditLotTable))).scalar_one()
        assert lot.id == "lot-1"

    @pytest.mark.asyncio
    async def test_session_rolls_back_on_error(self, engine) -> None:
        with pytest.raises(RuntimeError):
            async with get_session(engine) as session:
                session.add(
                    CreditLotTable(
                        id="lot-1",
                        user_id="user-1",
                        amount_original=5,
                        amount_remaining=5,
                        source="promo",
                    )
                )
                await session.flush()
                raise RuntimeError("boom")

        async with get_session(engine) as session:
            assert (await session.execute(select(CreditLotTable))).first() is None

    def test_session_factory_cached_per_engine(self, engine) -> None:
        assert get_session_factory(engine) is get_session_factory(engine)

    @pytest.mark.asyncio
    async def test_advisory_lock_is_noop_on_sqlite(self, session) -> None:
        assert dialect_name(session) == "sqlite"
        await acquire_advisory_lock(session, "credit", "user-1")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestAdvisoryLockKey:
    def test_stable_across_calls(self) -> None:
        assert advisory_lock_key("credit", "user-1") == advisory_lock_key("credit", "user-1")

    def test_namespaced(self) -> None:
        assert advisory_lock_key("credit", "user-1") != advisory_lock_key("quota", "user-1")

    def test_fits_signed_bigint(self) -> None:
        key = advisory_lock_key("credit", "a-very-long-user-identifier" * 4)
        assert -(2**63) <= key < 2**63


class TestUTCDateTime:
    @pytest.mark.asyncio
    async def test_round_trips_as_aware_utc(self, session) -> None:
        tokyo = timezone(timedelta(hours=9))
        expires = datetime(2026, 6, 1, 9, 0, tzinfo=tokyo)
        session.add(
            CreditLotTable(
                id="lot-1",
                user_id="user-1",
                amount_original=5,
                amount_remaining=5,
                source="promo",
                expires_at=expires,
            )
        )
        await session.commit()

        row = (
            await session.execute(select(CreditLotTable).execution_options(populate_existing=True))
        ).scalar_one()
        assert row.expires_at.tzinfo is not None
        assert row.expires_at == datetime(2026, 6, 1, 0, 0, tzinfo=UTC)
