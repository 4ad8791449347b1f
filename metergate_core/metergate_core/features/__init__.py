"""Feature cost catalog and plan tiers."""

from metergate_core.features.catalog import (
    DEFAULT_FEATURE_COSTS,
    FeatureCatalog,
    FeatureCost,
    PlanTier,
    load_catalog,
)

__all__ = [
    "DEFAULT_FEATURE_COSTS",
    "FeatureCatalog",
    "FeatureCost",
    "PlanTier",
    "load_catalog",
]
