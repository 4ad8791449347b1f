"""Feature cost catalog and plan-tier entitlements.

Every metered feature has a free allowance per billing period and a
credit cost charged once that allowance is used up:

* ``free_limit_per_period`` -- successful executions per calendar month
  that are covered by the free quota (``0`` means always charged).
* ``credit_cost`` -- credits consumed per execution beyond the quota.

Subscription tiers above ``free`` are unlimited: they run every feature
without touching quota or credit.

The catalog is injected into the feature gate.  The built-in table can be
replaced by a JSON file of the form::

    {
        "features": {
            "case_interview": {"free_limit_per_period": 3, "credit_cost": 1}
        },
        "unlimited_tiers": ["pro", "elite"]
    }
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator, Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from metergate_core.errors import InvalidRequest

logger = logging.getLogger(__name__)

_FEATURE_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_]{0,63}$")


class PlanTier(str, Enum):
    """Subscription tier carried by the identity claim."""

    FREE = "free"
    PRO = "pro"
    ELITE = "elite"

    @classmethod
    def parse(cls, value: str | None) -> PlanTier:
        """Map a raw claim to a tier; unknown or missing values are ``free``."""
        if not value:
            return cls.FREE
        try:
            return cls(value.lower())
        except ValueError:
            logger.warning("Unknown plan tier '%s'; treating as free", value)
            return cls.FREE


class FeatureCost(BaseModel):
    """Quota allowance and credit price of a single feature."""

    free_limit_per_period: int = Field(ge=0)
    credit_cost: int = Field(ge=1)


# Default table: free uses per month and credit price per execution.
DEFAULT_FEATURE_COSTS: dict[str, FeatureCost] = {
    "case_interview": FeatureCost(free_limit_per_period=3, credit_cost=1),
    "case_generate": FeatureCost(free_limit_per_period=3, credit_cost=1),
    "fermi": FeatureCost(free_limit_per_period=3, credit_cost=1),
    "fermi_generate": FeatureCost(free_limit_per_period=5, credit_cost=1),
    "interview_10": FeatureCost(free_limit_per_period=1, credit_cost=2),
    "ai_training": FeatureCost(free_limit_per_period=3, credit_cost=1),
    "es_correction": FeatureCost(free_limit_per_period=3, credit_cost=1),
    "industry_insight": FeatureCost(free_limit_per_period=3, credit_cost=2),
    "enterprise_qgen": FeatureCost(free_limit_per_period=5, credit_cost=2),
    "es_draft": FeatureCost(free_limit_per_period=0, credit_cost=1),
    "career_gap_deep": FeatureCost(free_limit_per_period=0, credit_cost=3),
}

DEFAULT_UNLIMITED_TIERS: frozenset[PlanTier] = frozenset({PlanTier.PRO, PlanTier.ELITE})


class FeatureCatalog:
    """Immutable lookup of feature costs and unlimited tiers.

    Parameters
    ----------
    costs:
        Mapping of feature id to :class:`FeatureCost`.
    unlimited_tiers:
        Tiers that bypass quota and credit entirely.
    """

    def __init__(
        self,
        costs: Mapping[str, FeatureCost],
        unlimited_tiers: frozenset[PlanTier] = DEFAULT_UNLIMITED_TIERS,
    ) -> None:
        for feature_id in costs:
            if not _FEATURE_ID_RE.match(feature_id):
                raise ValueError(f"Invalid feature id in catalog: {feature_id!r}")
        self._costs = dict(costs)
        self._unlimited = frozenset(unlimited_tiers)

    def __contains__(self, feature: object) -> bool:
        return feature in self._costs

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._costs))

    def __len__(self) -> int:
        return len(self._costs)

    def get(self, feature: str) -> FeatureCost:
        """Return the cost entry for *feature*.

        Raises
        ------
        InvalidRequest
            If the feature id is malformed or not in the catalog.
        """
        if not isinstance(feature, str) or not _FEATURE_ID_RE.match(feature):
            raise InvalidRequest(f"Malformed feature id: {feature!r}")
        cost = self._costs.get(feature)
        if cost is None:
            raise InvalidRequest(f"Unknown feature: {feature!r}")
        return cost

    def is_unlimited(self, plan: PlanTier) -> bool:
        """Return ``True`` if *plan* runs features without metering."""
        return plan in self._unlimited

    def as_dict(self) -> dict[str, dict[str, int]]:
        return {name: cost.model_dump() for name, cost in sorted(self._costs.items())}

    @classmethod
    def default(cls) -> FeatureCatalog:
        return cls(DEFAULT_FEATURE_COSTS)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> FeatureCatalog:
        """Build a catalog from a decoded JSON document.

        Raises
        ------
        ValueError
            If the document is missing ``features`` or an entry is invalid.
        """
        raw_features = data.get("features")
        if not isinstance(raw_features, Mapping) or not raw_features:
            raise ValueError("Feature catalog must contain a non-empty 'features' object")

        costs: dict[str, FeatureCost] = {}
        for name, entry in raw_features.items():
            try:
                costs[str(name)] = FeatureCost.model_validate(entry)
            except ValidationError as exc:
                raise ValueError(f"Invalid catalog entry for '{name}': {exc}") from exc

        tiers_raw = data.get("unlimited_tiers")
        if tiers_raw is None:
            tiers = DEFAULT_UNLIMITED_TIERS
        else:
            tiers = frozenset(PlanTier(str(t).lower()) for t in tiers_raw)
        return cls(costs, unlimited_tiers=tiers)


def load_catalog(path: Path | str | None = None) -> FeatureCatalog:
    """Load the feature catalog from *path*, or return the built-in table.

    Parameters
    ----------
    path:
        Optional path to a JSON catalog file.

    Returns
    -------
    FeatureCatalog
        The loaded catalog.
    """
    if path is None:
        return FeatureCatalog.default()

    catalog_path = Path(path)
    data = json.loads(catalog_path.read_text(encoding="utf-8"))
    catalog = FeatureCatalog.from_mapping(data)
    logger.info("Loaded feature catalog from %s (%d features)", catalog_path, len(catalog))
    return catalog
