"""Prepaid credit balance held as FIFO-consumed lots.

A user's balance is never stored; it is the sum of ``amount_remaining``
over the user's unexpired lots.  Consumption walks lots oldest-first and
either removes exactly the requested amount or touches nothing.

Concurrency
-----------
On PostgreSQL every ``consume`` takes a transaction-scoped advisory lock
keyed on the user id and then row-locks the lots it reads, so two
consumers for the same user are fully serialised.  On SQLite each lot
deduction is a conditional ``UPDATE ... WHERE amount_remaining >= take``;
a deduction that loses its guard raises :class:`PersistenceFailure` and
the caller's transaction rolls back, so a stale read can never overspend.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from metergate_core.errors import InsufficientCredit, InvalidRequest, PersistenceFailure
from metergate_core.state.database import acquire_advisory_lock
from metergate_core.state.repository import (
    CreditEventRepository,
    CreditLotRepository,
    list_expired_lots,
    zero_lot,
)
from metergate_core.state.tables import CreditLotTable

logger = logging.getLogger(__name__)

_LOCK_NAMESPACE = "credit"


@dataclass(frozen=True)
class CreditLot:
    """Read-only view of a credit lot."""

    id: str
    user_id: str
    amount_original: int
    amount_remaining: int
    source: str
    external_ref: str | None
    created_at: datetime
    expires_at: datetime | None

    @classmethod
    def from_row(cls, row: CreditLotTable) -> CreditLot:
        return cls(
            id=row.id,
            user_id=row.user_id,
            amount_original=row.amount_original,
            amount_remaining=row.amount_remaining,
            source=row.source,
            external_ref=row.external_ref,
            created_at=row.created_at,
            expires_at=row.expires_at,
        )


@dataclass(frozen=True)
class LotDeduction:
    lot_id: str
    amount: int


@dataclass(frozen=True)
class LotGrant:
    """Result of :meth:`CreditLedger.add_lot`.

    ``created`` is ``False`` when the external reference had already been
    granted and the existing lot is returned instead.
    """

    lot: CreditLot
    created: bool


@dataclass(frozen=True)
class ExpirySummary:
    lots_expired: int
    credits_expired: int


class CreditLedger:
    """Credit lots of a single user.

    Parameters
    ----------
    session:
        Active database session; the caller owns the transaction.
    user_id:
        The user whose lots are read and written.
    lot_expiry_days:
        Lifetime applied to new lots when no explicit expiry is given.
        ``None`` creates lots that never expire.
    """

    def __init__(
        self,
        session: AsyncSession,
        user_id: str,
        *,
        lot_expiry_days: int | None = None,
    ) -> None:
        self._session = session
        self._user_id = user_id
        self._lot_expiry_days = lot_expiry_days
        self._lots = CreditLotRepository(session, user_id)
        self._events = CreditEventRepository(session, user_id)

    async def balance(self, *, now: datetime | None = None) -> int:
        """Return the spendable balance (unexpired lots only)."""
        return await self._lots.sum_remaining(now)

    async def lots(self, *, include_empty: bool = False) -> list[CreditLot]:
        """Return lots in consumption order.

        By default only lots that can still be spent are returned.
        """
        if include_empty:
            rows = await self._lots.list_all()
        else:
            rows = await self._lots.list_spendable()
        return [CreditLot.from_row(row) for row in rows]

    async def consume(
        self,
        cost: int,
        *,
        job_id: str | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> list[LotDeduction]:
        """Remove exactly *cost* credits, oldest lots first.

        Returns
        -------
        list[LotDeduction]
            The per-lot amounts removed, in consumption order.

        Raises
        ------
        InsufficientCredit
            If the balance is below *cost*.  No lot is modified.
        PersistenceFailure
            If a lot changed underneath this consumer or the write failed.
            The caller must roll back its transaction.
        """
        if cost <= 0:
            raise InvalidRequest(f"Credit cost must be positive, got {cost}")

        try:
            await acquire_advisory_lock(self._session, _LOCK_NAMESPACE, self._user_id)
            lots = await self._lots.list_spendable(now, for_update=True)
            balance = sum(lot.amount_remaining for lot in lots)
            if balance < cost:
                raise InsufficientCredit(required=cost, balance=balance)

            deductions: list[LotDeduction] = []
            outstanding = cost
            for lot in lots:
                if outstanding == 0:
                    break
                take = min(outstanding, lot.amount_remaining)
                if not await self._lots.deduct(lot.id, take):
                    raise PersistenceFailure(
                        f"Credit lot {lot.id} changed during consumption (user={self._user_id})"
                    )
                await self._events.record("consume", take, lot_id=lot.id, job_id=job_id, reason=reason)
                deductions.append(LotDeduction(lot_id=lot.id, amount=take))
                outstanding -= take
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Credit consumption failed for user={self._user_id}") from exc

        logger.info(
            "Consumed %d credit(s) user=%s job=%s lots=%d",
            cost,
            self._user_id,
            job_id,
            len(deductions),
        )
        return deductions

    async def add_lot(
        self,
        amount: int,
        *,
        source: str = "purchase",
        external_ref: str | None = None,
        expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> LotGrant:
        """Append a new lot holding *amount* credits.

        With *external_ref*, repeated calls for the same reference return
        the lot created by the first call and grant nothing.
        """
        if amount <= 0:
            raise InvalidRequest(f"Lot amount must be positive, got {amount}")

        now = now or datetime.now(UTC)
        if expires_at is None and self._lot_expiry_days is not None:
            expires_at = now + timedelta(days=self._lot_expiry_days)

        try:
            lot_id = await self._lots.insert(
                amount,
                source=source,
                external_ref=external_ref,
                created_at=now,
                expires_at=expires_at,
            )
            if lot_id is None:
                existing = await self._lots.get_by_external_ref(external_ref or "")
                if existing is None:
                    raise PersistenceFailure(f"Lot insert for external_ref={external_ref} did not apply")
                if existing.user_id != self._user_id:
                    logger.warning(
                        "external_ref=%s already granted to another user (requested user=%s)",
                        external_ref,
                        self._user_id,
                    )
                logger.info("Duplicate grant ignored external_ref=%s lot=%s", external_ref, existing.id)
                return LotGrant(lot=CreditLot.from_row(existing), created=False)

            await self._events.record("grant", amount, lot_id=lot_id, reason=source)
            row = await self._lots.get(lot_id)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Credit grant failed for user={self._user_id}") from exc

        if row is None:
            raise PersistenceFailure(f"Lot {lot_id} not readable after insert")
        logger.info("Granted %d credit(s) user=%s lot=%s source=%s", amount, self._user_id, lot_id, source)
        return LotGrant(lot=CreditLot.from_row(row), created=True)


async def expire_due_lots(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    limit: int = 500,
) -> ExpirySummary:
    """Zero the remaining amount of every lot whose expiry has passed.

    Each expired lot gets an ``expire`` audit event carrying the amount
    that was forfeited.  Lots consumed concurrently are skipped and picked
    up by the next sweep.
    """
    now = now or datetime.now(UTC)
    expired = 0
    credits = 0
    for lot in await list_expired_lots(session, now, limit=limit):
        amount = lot.amount_remaining
        if not await zero_lot(session, lot.id, amount):
            continue
        await CreditEventRepository(session, lot.user_id).record(
            "expire",
            amount,
            lot_id=lot.id,
            reason="lot_expired",
        )
        expired += 1
        credits += amount

    if expired:
        logger.info("Expired %d lot(s) totalling %d credit(s)", expired, credits)
    return ExpirySummary(lots_expired=expired, credits_expired=credits)
