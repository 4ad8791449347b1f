"""FastAPI application entry-point for the metering API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from metergate_api import __version__
from metergate_api.config import APISettings, load_api_settings
from metergate_api.dependencies import (
    dispose_engine,
    dispose_gate,
    dispose_generation_client,
    get_charge_committer,
    get_session_factory,
    init_engine,
    init_gate,
    init_generation_client,
)
from metergate_api.middleware.auth import AuthenticationMiddleware
from metergate_api.middleware.logging import RequestLoggingMiddleware
from metergate_api.routers import billing, credits, execute, health, jobs, quota
from metergate_api.services.maintenance_scheduler import MaintenanceScheduler
from metergate_core.errors import InvalidRequest, PersistenceFailure, Unauthenticated

logger = logging.getLogger(__name__)


def _configure_structured_logging() -> None:
    from metergate_api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine (and create tables on SQLite;
      PostgreSQL deployments use the Alembic migrations).
    - Initialise the generation worker client and the feature gate.
    - Start the maintenance scheduler.

    On shutdown the scheduler is stopped and pools are closed.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        _configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if is_local:
        from metergate_core.state.sqlite_adapter import create_local_tables

        await create_local_tables(engine)

    init_generation_client(settings)
    logger.info("Generation client initialised (%s)", settings.worker_url)

    gate = init_gate(settings)
    logger.info("Feature gate initialised (%d features)", len(gate.catalog))

    scheduler: MaintenanceScheduler | None = None
    if settings.maintenance_enabled:
        scheduler = MaintenanceScheduler(
            get_session_factory(),
            get_charge_committer(),
            interval_seconds=settings.maintenance_interval_seconds,
        )
        await scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    dispose_gate()
    await dispose_generation_client()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Metergate API",
        description="Quota, credit and idempotent job metering in front of expensive generations.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost last) -----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Idempotency-Key",
            "Confirm-Charge",
            "X-Correlation-ID",
            "Accept",
        ],
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(quota.router, prefix="/api/v1")
    app.include_router(execute.router, prefix="/api/v1")
    app.include_router(jobs.router, prefix="/api/v1")
    app.include_router(credits.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(InvalidRequest)
    async def invalid_request_handler(request: Request, exc: InvalidRequest) -> JSONResponse:
        logger.info("Invalid request on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"error": "invalid_request", "detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Request validation failed on %s: %s", request.url.path, exc.errors())
        return JSONResponse(status_code=400, content={"error": "invalid_request", "detail": "Malformed request body"})

    @app.exception_handler(Unauthenticated)
    async def unauthenticated_handler(request: Request, exc: Unauthenticated) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": "Authentication required"})

    @app.exception_handler(PersistenceFailure)
    async def persistence_failure_handler(request: Request, exc: PersistenceFailure) -> JSONResponse:
        logger.error("Persistence failure on %s: %s", request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "persistence_failure"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "persistence_failure"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"error": "invalid_request"})

    return app


# Module-level application instance used by ``uvicorn metergate_api.main:app``.
app = create_app()
