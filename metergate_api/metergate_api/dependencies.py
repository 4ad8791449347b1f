"""FastAPI dependency injection for settings, sessions, the worker client and the gate."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from metergate_api.config import APISettings, load_api_settings
from metergate_api.services.generation_client import GenerationClient
from metergate_core.features.catalog import FeatureCatalog, PlanTier, load_catalog
from metergate_core.gate.charges import ChargeCommitter
from metergate_core.gate.feature_gate import FeatureGate
from metergate_core.state.database import get_engine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Generation worker client
# ---------------------------------------------------------------------------

_generation_client: GenerationClient | None = None


def init_generation_client(settings: APISettings) -> GenerationClient:
    """Create and cache the global :class:`GenerationClient`."""
    global _generation_client  # noqa: PLW0603
    _generation_client = GenerationClient(
        base_url=settings.worker_url,
        timeout=settings.worker_timeout,
        shared_secret=settings.worker_shared_secret.get_secret_value(),
    )
    return _generation_client


async def dispose_generation_client() -> None:
    """Close the worker client's HTTP pool."""
    global _generation_client  # noqa: PLW0603
    if _generation_client is not None:
        await _generation_client.close()
        _generation_client = None


def get_generation_client() -> GenerationClient:
    """Return the cached :class:`GenerationClient` singleton."""
    if _generation_client is None:
        raise RuntimeError(
            "Generation client has not been initialised. "
            "Ensure init_generation_client() is called during application startup."
        )
    return _generation_client


GenerationClientDep = Annotated[GenerationClient, Depends(get_generation_client)]

# ---------------------------------------------------------------------------
# Feature gate
# ---------------------------------------------------------------------------

_catalog: FeatureCatalog | None = None
_charge_committer: ChargeCommitter | None = None
_gate: FeatureGate | None = None


def init_gate(settings: APISettings) -> FeatureGate:
    """Build the catalog, charge committer and gate on the global engine."""
    global _catalog, _charge_committer, _gate  # noqa: PLW0603
    session_factory = get_session_factory()
    _catalog = load_catalog(settings.feature_catalog_path)
    _charge_committer = ChargeCommitter(session_factory, max_attempts=settings.charge_max_attempts)
    _gate = FeatureGate(
        session_factory,
        get_generation_client(),
        _catalog,
        running_ttl=timedelta(seconds=settings.running_ttl_seconds),
        worker_timeout=settings.worker_timeout,
        charge_committer=_charge_committer,
    )
    return _gate


def dispose_gate() -> None:
    global _catalog, _charge_committer, _gate  # noqa: PLW0603
    _catalog = None
    _charge_committer = None
    _gate = None


def get_gate() -> FeatureGate:
    """Return the cached :class:`FeatureGate` singleton."""
    if _gate is None:
        raise RuntimeError("Feature gate has not been initialised. Ensure init_gate() is called during application startup.")
    return _gate


def get_charge_committer() -> ChargeCommitter:
    """Return the cached :class:`ChargeCommitter` singleton."""
    if _charge_committer is None:
        raise RuntimeError(
            "Charge committer has not been initialised. Ensure init_gate() is called during application startup."
        )
    return _charge_committer


GateDep = Annotated[FeatureGate, Depends(get_gate)]

# ---------------------------------------------------------------------------
# Identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_current_user(request: Request) -> str:
    """Extract the authenticated user id from request state."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return str(user_id)


CurrentUserDep = Annotated[str, Depends(get_current_user)]


def get_plan(request: Request) -> PlanTier:
    """Extract the caller's plan tier; ``free`` when absent."""
    plan = getattr(request.state, "plan", None)
    return plan if isinstance(plan, PlanTier) else PlanTier.FREE


PlanDep = Annotated[PlanTier, Depends(get_plan)]
