"""SQLite adapter for local and test operation.

Provides an async SQLAlchemy engine backed by ``aiosqlite`` that uses the
same ORM table definitions as the production PostgreSQL backend.

Key differences from the PostgreSQL backend:

* No connection pooling (SQLite is single-writer).
* Advisory locks and ``FOR UPDATE`` are skipped; guarded conditional
  updates carry the concurrency checks.
* Tables are created on demand via :func:`create_local_tables`.
* JSONB columns fall back to SQLite's JSON (stored as TEXT).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

_MEMORY = ":memory:"

# Applied to every new DBAPI connection.  WAL is skipped for in-memory
# databases, which only support the ``memory`` journal.
_FILE_PRAGMAS: tuple[str, ...] = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
)
_COMMON_PRAGMAS: tuple[str, ...] = (
    "PRAGMA foreign_keys=ON",
    "PRAGMA busy_timeout=30000",
)


def get_local_engine(
    db_path: Path | str = ".metergate/state.db",
) -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are
        created automatically.  ``:memory:`` gives an ephemeral database
        held on a single shared connection, so every session sees the
        same tables.

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    connect_args = {"check_same_thread": False, "timeout": 30}

    if str(db_path) == _MEMORY:
        url = f"sqlite+aiosqlite:///{_MEMORY}"
        engine = create_async_engine(url, connect_args=connect_args, poolclass=StaticPool)
        pragmas = _COMMON_PRAGMAS
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"
        engine = create_async_engine(url, connect_args=connect_args)
        pragmas = _FILE_PRAGMAS + _COMMON_PRAGMAS

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in pragmas:
            cursor.execute(pragma)
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create all ORM tables in the database.

    Idempotent and safe to call on every startup.
    """
    from metergate_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Metering tables created/verified")


@asynccontextmanager
async def get_local_session(
    engine: AsyncEngine,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session with commit/rollback semantics.

    Mirrors :func:`metergate_core.state.database.get_session` but builds a
    fresh factory, which suits short-lived CLI invocations.
    """
    factory = async_sessionmaker(engine, expire_on_commit=False)
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
