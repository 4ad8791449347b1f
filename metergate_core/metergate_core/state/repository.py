"""Repository classes providing access to the metering state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Every state transition that can race is a single conditional ``UPDATE``
whose ``WHERE`` clause carries the expected prior state.  The returned row
count tells the caller whether it won the transition.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from metergate_core.state.database import dialect_name
from metergate_core.state.tables import (
    CreditEventTable,
    CreditLotTable,
    JobTable,
    QuotaCounterTable,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


def _rowcount(result: Any) -> int:
    return int(getattr(result, "rowcount", 0) or 0)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    set_: dict[str, Any],
) -> Any:
    """Dialect-aware upsert: PostgreSQL or SQLite ``ON CONFLICT DO UPDATE``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    set_:
        Column-expression mapping applied when a conflict occurs.  Values
        may reference the existing row (e.g. ``table.count + 1``).

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt: Any
    if "postgresql" in dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=set_)
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Returns
    -------
    The execution result; ``rowcount`` is 0 when the row already existed.
    """
    stmt: Any
    if "postgresql" in dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


def _supports_row_locks(session: AsyncSession) -> bool:
    return "postgresql" in dialect_name(session)


# ---------------------------------------------------------------------------
# QuotaCounterRepository
# ---------------------------------------------------------------------------


class QuotaCounterRepository:
    """Per-user usage counters keyed by feature and billing period."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def get_count(self, feature: str, period: str) -> int:
        """Return the counter value, treating a missing row as zero."""
        stmt = select(QuotaCounterTable.count).where(
            QuotaCounterTable.user_id == self._user_id,
            QuotaCounterTable.feature == feature,
            QuotaCounterTable.period == period,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one_or_none() or 0)

    async def increment(self, feature: str, period: str, amount: int = 1) -> None:
        """Atomically add *amount* to the counter, creating it if absent."""
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            QuotaCounterTable,
            values={
                "user_id": self._user_id,
                "feature": feature,
                "period": period,
                "count": amount,
                "updated_at": now,
            },
            index_elements=["user_id", "feature", "period"],
            set_={
                "count": QuotaCounterTable.count + amount,
                "updated_at": now,
            },
        )
        await self._session.flush()

    async def counts_for_period(self, period: str) -> dict[str, int]:
        """Return ``{feature: count}`` for every counter in *period*."""
        stmt = select(QuotaCounterTable.feature, QuotaCounterTable.count).where(
            QuotaCounterTable.user_id == self._user_id,
            QuotaCounterTable.period == period,
        )
        result = await self._session.execute(stmt)
        return {row.feature: int(row.count) for row in result.all()}


# ---------------------------------------------------------------------------
# CreditLotRepository
# ---------------------------------------------------------------------------


def _active_lot_clause(now: datetime) -> Any:
    return or_(CreditLotTable.expires_at.is_(None), CreditLotTable.expires_at > now)


class CreditLotRepository:
    """Credit lots owned by a single user."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def sum_remaining(self, now: datetime | None = None) -> int:
        """Sum ``amount_remaining`` over unexpired lots."""
        now = now or datetime.now(UTC)
        stmt = select(func.coalesce(func.sum(CreditLotTable.amount_remaining), 0)).where(
            CreditLotTable.user_id == self._user_id,
            _active_lot_clause(now),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_spendable(self, now: datetime | None = None, *, for_update: bool = False) -> list[CreditLotTable]:
        """Return unexpired lots with remaining credit in consumption order.

        Parameters
        ----------
        for_update:
            Lock the returned rows (``SELECT ... FOR UPDATE``) on backends
            that support row locks.
        """
        now = now or datetime.now(UTC)
        stmt = (
            select(CreditLotTable)
            .where(
                CreditLotTable.user_id == self._user_id,
                CreditLotTable.amount_remaining > 0,
                _active_lot_clause(now),
            )
            .order_by(CreditLotTable.created_at.asc(), CreditLotTable.id.asc())
            .execution_options(populate_existing=True)
        )
        if for_update and _supports_row_locks(self._session):
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_all(self) -> list[CreditLotTable]:
        """Return every lot of the user (including exhausted and expired)."""
        stmt = (
            select(CreditLotTable)
            .where(CreditLotTable.user_id == self._user_id)
            .order_by(CreditLotTable.created_at.asc(), CreditLotTable.id.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_external_ref(self, external_ref: str) -> CreditLotTable | None:
        # external_ref is globally unique, so the lookup is not user-scoped.
        stmt = select(CreditLotTable).where(CreditLotTable.external_ref == external_ref)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert(
        self,
        amount: int,
        *,
        source: str,
        external_ref: str | None,
        created_at: datetime,
        expires_at: datetime | None,
    ) -> str | None:
        """Insert a lot; return its id, or ``None`` if *external_ref* already exists."""
        lot_id = _new_id()
        result = await _dialect_upsert_nothing(
            self._session,
            CreditLotTable,
            values={
                "id": lot_id,
                "user_id": self._user_id,
                "amount_original": amount,
                "amount_remaining": amount,
                "source": source,
                "external_ref": external_ref,
                "created_at": created_at,
                "expires_at": expires_at,
                "updated_at": created_at,
            },
            index_elements=["external_ref"],
        )
        await self._session.flush()
        return lot_id if _rowcount(result) > 0 else None

    async def get(self, lot_id: str) -> CreditLotTable | None:
        stmt = (
            select(CreditLotTable)
            .where(
                CreditLotTable.id == lot_id,
                CreditLotTable.user_id == self._user_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def deduct(self, lot_id: str, amount: int) -> bool:
        """Subtract *amount* from a lot if it still holds at least that much.

        Returns ``True`` if the guarded update applied.
        """
        stmt = (
            update(CreditLotTable)
            .where(
                CreditLotTable.id == lot_id,
                CreditLotTable.user_id == self._user_id,
                CreditLotTable.amount_remaining >= amount,
            )
            .values(
                amount_remaining=CreditLotTable.amount_remaining - amount,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return _rowcount(result) == 1


async def list_expired_lots(session: AsyncSession, now: datetime, limit: int = 500) -> list[CreditLotTable]:
    """Return lots of any user whose expiry passed and that still hold credit."""
    stmt = (
        select(CreditLotTable)
        .where(
            CreditLotTable.expires_at.is_not(None),
            CreditLotTable.expires_at <= now,
            CreditLotTable.amount_remaining > 0,
        )
        .order_by(CreditLotTable.expires_at.asc(), CreditLotTable.id.asc())
        .limit(limit)
    )
    if _supports_row_locks(session):
        stmt = stmt.with_for_update(skip_locked=True)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def zero_lot(session: AsyncSession, lot_id: str, expected_remaining: int) -> bool:
    """Set a lot's remaining amount to zero if it still holds *expected_remaining*."""
    stmt = (
        update(CreditLotTable)
        .where(
            CreditLotTable.id == lot_id,
            CreditLotTable.amount_remaining == expected_remaining,
        )
        .values(amount_remaining=0, updated_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.flush()
    return _rowcount(result) == 1


# ---------------------------------------------------------------------------
# CreditEventRepository
# ---------------------------------------------------------------------------


class CreditEventRepository:
    """Append-only credit audit trail."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def record(
        self,
        kind: str,
        amount: int,
        *,
        lot_id: str | None = None,
        job_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        self._session.add(
            CreditEventTable(
                user_id=self._user_id,
                kind=kind,
                amount=amount,
                lot_id=lot_id,
                job_id=job_id,
                reason=reason,
                created_at=datetime.now(UTC),
            )
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# JobRepository
# ---------------------------------------------------------------------------


class JobRepository:
    """Idempotency-keyed job records.

    Lookups by ``(feature, idempotency_key)`` are scoped to the user the
    repository was created for.  Lookups by id and outbox scans are not,
    since the charge reconciler works across users.
    """

    def __init__(self, session: AsyncSession, user_id: str | None = None) -> None:
        self._session = session
        self._user_id = user_id

    def _require_user(self) -> str:
        if self._user_id is None:
            raise RuntimeError("JobRepository was created without a user_id")
        return self._user_id

    async def insert_if_absent(
        self,
        feature: str,
        idempotency_key: str,
        request: dict[str, Any],
    ) -> bool:
        """Insert a ``running`` job unless one already exists for the key.

        Returns ``True`` if this call created the row.
        """
        now = datetime.now(UTC)
        result = await _dialect_upsert_nothing(
            self._session,
            JobTable,
            values={
                "id": _new_id(),
                "user_id": self._require_user(),
                "feature": feature,
                "idempotency_key": idempotency_key,
                "status": "running",
                "request_json": request,
                "attempts": 1,
                "charge_state": "none",
                "charge_amount": 0,
                "charge_attempts": 0,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["user_id", "feature", "idempotency_key"],
        )
        await self._session.flush()
        return _rowcount(result) > 0

    async def get(self, feature: str, idempotency_key: str) -> JobTable | None:
        stmt = select(JobTable).where(
            JobTable.user_id == self._require_user(),
            JobTable.feature == feature,
            JobTable.idempotency_key == idempotency_key,
        ).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, job_id: str) -> JobTable | None:
        stmt = select(JobTable).where(JobTable.id == job_id).execution_options(populate_existing=True)
        if self._user_id is not None:
            stmt = stmt.where(JobTable.user_id == self._user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _guarded_update(self, job_id: str, guards: list[Any], **values: Any) -> bool:
        values.setdefault("updated_at", datetime.now(UTC))
        stmt = (
            update(JobTable)
            .where(JobTable.id == job_id, *guards)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return _rowcount(result) == 1

    # -- Status transitions ---------------------------------------------------

    async def restart(self, job_id: str) -> bool:
        """Move a ``failed`` or ``blocked`` job back to ``running``."""
        return await self._guarded_update(
            job_id,
            [JobTable.status.in_(("failed", "blocked"))],
            status="running",
            attempts=JobTable.attempts + 1,
            error_code=None,
            error_message=None,
        )

    async def reclaim_stale(self, job_id: str, stale_before: datetime) -> bool:
        """Take over a ``running`` job that has not been touched since *stale_before*."""
        return await self._guarded_update(
            job_id,
            [JobTable.status == "running", JobTable.updated_at < stale_before],
            attempts=JobTable.attempts + 1,
        )

    async def mark_succeeded(
        self,
        job_id: str,
        result: dict[str, Any],
        *,
        charge_mode: str,
        charge_amount: int,
    ) -> bool:
        """Store the result and enqueue the charge in one row update."""
        now = datetime.now(UTC)
        return await self._guarded_update(
            job_id,
            [JobTable.status == "running"],
            status="succeeded",
            result_json=result,
            error_code=None,
            error_message=None,
            completed_at=now,
            updated_at=now,
            charge_mode=charge_mode,
            charge_amount=charge_amount,
            charge_state="pending" if charge_amount > 0 else "none",
        )

    async def mark_failed(self, job_id: str, error_code: str, error_message: str | None) -> bool:
        now = datetime.now(UTC)
        return await self._guarded_update(
            job_id,
            [JobTable.status == "running"],
            status="failed",
            error_code=error_code,
            error_message=error_message,
            completed_at=now,
            updated_at=now,
        )

    async def mark_blocked(self, job_id: str, reason: str, message: str | None = None) -> bool:
        return await self._guarded_update(
            job_id,
            [JobTable.status == "running"],
            status="blocked",
            error_code=reason,
            error_message=message,
        )

    # -- Charge outbox --------------------------------------------------------

    async def claim_charge(self, job_id: str) -> bool:
        """Win the ``pending → applied`` transition of a job's charge."""
        return await self._guarded_update(
            job_id,
            [JobTable.status == "succeeded", JobTable.charge_state == "pending"],
            charge_state="applied",
            charge_attempts=JobTable.charge_attempts + 1,
            charge_error=None,
        )

    async def record_charge_error(self, job_id: str, *, state: str, message: str) -> bool:
        """Count a failed charge attempt; *state* is the charge state to leave behind."""
        return await self._guarded_update(
            job_id,
            [JobTable.charge_state == "pending"],
            charge_state=state,
            charge_attempts=JobTable.charge_attempts + 1,
            charge_error=message[:2000],
        )

    async def list_pending_charges(self, *, older_than: datetime, limit: int = 100) -> list[JobTable]:
        stmt = (
            select(JobTable)
            .where(
                JobTable.charge_state == "pending",
                JobTable.updated_at <= older_than,
            )
            .order_by(JobTable.updated_at.asc(), JobTable.id.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_charge_state(self) -> dict[str, int]:
        stmt = select(JobTable.charge_state, func.count()).group_by(JobTable.charge_state)
        result = await self._session.execute(stmt)
        return {state: int(count) for state, count in result.all()}
