"""Per-user, per-feature, per-period free-use counter.

The period is the UTC calendar month.  Counters are read freely but only
incremented by a charge commit, after the metered execution succeeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from metergate_core.errors import PersistenceFailure
from metergate_core.features.catalog import FeatureCatalog
from metergate_core.state.repository import QuotaCounterRepository

logger = logging.getLogger(__name__)


def billing_period(at: datetime | None = None) -> str:
    """Return the ``YYYY-MM`` billing period containing *at* (UTC)."""
    at = at or datetime.now(UTC)
    if at.tzinfo is not None:
        at = at.astimezone(UTC)
    return f"{at.year:04d}-{at.month:02d}"


@dataclass(frozen=True)
class QuotaStatus:
    """Snapshot of a feature's free-quota usage for the current period."""

    within_quota: bool
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


class QuotaLedger:
    """Quota counters of a single user.

    Parameters
    ----------
    session:
        Active database session; the caller owns the transaction.
    user_id:
        The user whose counters are read and written.
    catalog:
        Feature catalog providing the free allowance per feature.
        Defaults to the built-in table.
    """

    def __init__(self, session: AsyncSession, user_id: str, catalog: FeatureCatalog | None = None) -> None:
        self._repo = QuotaCounterRepository(session, user_id)
        self._user_id = user_id
        self._catalog = catalog if catalog is not None else FeatureCatalog.default()

    async def check(self, feature: str, *, at: datetime | None = None) -> QuotaStatus:
        """Return whether another free execution fits in the period.  Read-only."""
        limit = self._catalog.get(feature).free_limit_per_period
        used = await self._repo.get_count(feature, billing_period(at))
        return QuotaStatus(within_quota=used < limit, used=used, limit=limit)

    async def commit(self, feature: str, *, at: datetime | None = None) -> None:
        """Record one successful execution in the period containing *at*.

        Raises
        ------
        PersistenceFailure
            If the increment could not be written.
        """
        period = billing_period(at)
        try:
            await self._repo.increment(feature, period)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Quota commit failed for user={self._user_id} feature={feature}") from exc
        logger.debug("Quota committed user=%s feature=%s period=%s", self._user_id, feature, period)

    async def usage(self, feature: str, *, at: datetime | None = None) -> int:
        return await self._repo.get_count(feature, billing_period(at))

    async def usage_summary(self, *, at: datetime | None = None) -> dict[str, QuotaStatus]:
        """Return a :class:`QuotaStatus` for every catalog feature."""
        counts = await self._repo.counts_for_period(billing_period(at))
        summary: dict[str, QuotaStatus] = {}
        for feature in self._catalog:
            limit = self._catalog.get(feature).free_limit_per_period
            used = counts.get(feature, 0)
            summary[feature] = QuotaStatus(within_quota=used < limit, used=used, limit=limit)
        return summary
