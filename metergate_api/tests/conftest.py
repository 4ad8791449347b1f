"""Shared fixtures for metering API tests.

Builds the FastAPI app with dependency overrides so requests run through
the real middleware, routers and feature gate against a per-test SQLite
database, with a scriptable fake generation worker.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set JWT_SECRET before importing application modules so the
# AuthenticationMiddleware picks up a deterministic secret.
_TEST_JWT_SECRET = "test-secret-key-for-metergate-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from metergate_api.config import APISettings
from metergate_api.dependencies import get_db_session, get_gate, get_settings
from metergate_api.main import create_app
from metergate_api.security import TokenManager
from metergate_core.features.catalog import FeatureCatalog, FeatureCost, PlanTier
from metergate_core.gate.feature_gate import FeatureGate
from metergate_core.state.sqlite_adapter import create_local_tables, get_local_engine

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"

# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

_token_manager = TokenManager(SecretStr(os.environ["JWT_SECRET"]))


@pytest.fixture()
def make_token() -> Callable[..., str]:
    """Return a factory for signed bearer tokens."""

    def _make(sub: str = "user-1", plan: PlanTier = PlanTier.FREE, ttl_seconds: int = 3600) -> str:
        return _token_manager.generate_token(sub, plan, ttl_seconds=ttl_seconds)

    return _make


@pytest.fixture()
def auth_headers(make_token: Callable[..., str]) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token()}"}


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    return APISettings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        worker_url="http://worker.test",
        worker_timeout=5.0,
        cors_origins=["http://localhost:3000"],
        maintenance_enabled=False,
        billing_enabled=True,
        stripe_secret_key=SecretStr("sk_test_dummy"),
        stripe_webhook_secret=SecretStr(STRIPE_WEBHOOK_SECRET),
    )


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    db_engine = get_local_engine(tmp_path / "api.db")
    await create_local_tables(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class FakeWorker:
    """Scriptable generation worker; outcomes are result dicts or exceptions."""

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
        return {"feature": feature, "text": f"generated #{len(self.calls)}"}


@pytest.fixture()
def worker() -> FakeWorker:
    return FakeWorker()


@pytest.fixture()
def catalog() -> FeatureCatalog:
    return FeatureCatalog(
        {
            "summary": FeatureCost(free_limit_per_period=3, credit_cost=1),
            "deep_dive": FeatureCost(free_limit_per_period=0, credit_cost=3),
            "essay": FeatureCost(free_limit_per_period=0, credit_cost=7),
        }
    )


@pytest.fixture()
def gate(session_factory, worker: FakeWorker, catalog: FeatureCatalog) -> FeatureGate:
    return FeatureGate(session_factory, worker, catalog, worker_timeout=5.0)


# ---------------------------------------------------------------------------
# App and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings: APISettings, session_factory, gate: FeatureGate):
    """Create the app with settings, session and gate overridden."""
    application = create_app()

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_gate] = lambda: gate
    return application


@pytest_asyncio.fixture()
async def client(app, auth_headers: dict[str, str]) -> AsyncGenerator[AsyncClient, None]:
    """Async client bound to the app, authenticated as ``user-1`` on the free plan."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=auth_headers) as ac:
        yield ac


@pytest_asyncio.fixture()
async def anon_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async client without credentials."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
