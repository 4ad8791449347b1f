"""Metergate CLI application -- Typer-based operator interface.

Provides commands for schema setup, manual credit grants, balance and
quota inspection, job lookup, charge reconciliation and lot expiry.
Human-readable output goes to *stderr* via Rich; ``--json`` writes
machine-readable results to *stdout* so that scripts can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metergate_cli.display import display_balance, display_job, display_reconcile, display_usage
from metergate_core.errors import MeterError

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="metergate",
    help="Metergate - quota, credit and idempotent job metering for paid features",
    no_args_is_help=True,
)
console = Console(stderr=True)

from metergate_cli.commands.serve import serve_command  # noqa: E402

app.command(name="serve")(serve_command)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL (defaults to METERGATE_DATABASE_URL or the local SQLite store).",
        envvar="METERGATE_DATABASE_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve_database_url() -> str:
    if _database_url:
        return _database_url
    from metergate_core.config import load_settings

    return load_settings().database_url


def _run(operation: Callable[[async_sessionmaker[AsyncSession]], Awaitable[T]]) -> T:
    """Run *operation* against a fresh engine and dispose it afterwards.

    Metering and database errors are reported on the console and turned
    into exit code 3.
    """
    from metergate_core.state.database import get_engine

    async def _main() -> T:
        engine = get_engine(_resolve_database_url())
        try:
            return await operation(async_sessionmaker(engine, expire_on_commit=False))
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_main())
    except MeterError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=3) from exc
    except SQLAlchemyError as exc:
        console.print(f"[red]Database error: {exc}[/red]")
        console.print("[dim]Run [bold]metergate init-db[/bold] if the schema has not been created.[/dim]")
        raise typer.Exit(code=3) from exc


def _write_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _lot_dict(lot: Any) -> dict[str, Any]:
    return {
        "id": lot.id,
        "source": lot.source,
        "external_ref": lot.external_ref,
        "amount_original": lot.amount_original,
        "amount_remaining": lot.amount_remaining,
        "created_at": lot.created_at,
        "expires_at": lot.expires_at,
    }


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the metering schema.

    SQLite stores get their tables created directly; PostgreSQL is
    upgraded to the latest Alembic revision.
    """
    url = _resolve_database_url()

    if url.startswith("sqlite"):
        from metergate_core.state.database import get_engine
        from metergate_core.state.sqlite_adapter import create_local_tables

        async def _create() -> None:
            engine = get_engine(url)
            try:
                await create_local_tables(engine)
            finally:
                await engine.dispose()

        try:
            asyncio.run(_create())
        except SQLAlchemyError as exc:
            console.print(f"[red]Could not create tables: {exc}[/red]")
            raise typer.Exit(code=3) from exc
        console.print(f"[green]✓[/green] Created tables in {url.split('///', 1)[-1]}")
        return

    from alembic import command
    from alembic.config import Config

    import metergate_core.state as state_pkg

    cfg = Config()
    cfg.set_main_option("script_location", str(Path(state_pkg.__file__).parent / "migrations"))
    cfg.set_main_option("sqlalchemy.url", url)
    try:
        command.upgrade(cfg, "head")
    except SQLAlchemyError as exc:
        console.print(f"[red]Migration failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc
    console.print("[green]✓[/green] Database upgraded to head")


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


@app.command()
def grant(
    user_id: str = typer.Argument(..., help="User receiving the credit."),
    amount: int = typer.Argument(..., help="Credits to grant (positive)."),
    source: str = typer.Option("grant", "--source", help="Origin recorded on the lot."),
    external_ref: str | None = typer.Option(
        None,
        "--ref",
        help="External reference; repeating a reference grants nothing.",
    ),
    expires_in_days: int | None = typer.Option(
        None,
        "--expires-in-days",
        help="Lot validity in days (default: never expires).",
    ),
) -> None:
    """Grant credit to a user as a new lot."""
    from metergate_core.ledger.credit_ledger import CreditLedger

    if amount <= 0:
        console.print(f"[red]Amount must be positive, got {amount}[/red]")
        raise typer.Exit(code=3)

    expires_at = datetime.now(UTC) + timedelta(days=expires_in_days) if expires_in_days else None

    async def _grant(factory: async_sessionmaker[AsyncSession]) -> Any:
        async with factory.begin() as session:
            ledger = CreditLedger(session, user_id)
            grant_result = await ledger.add_lot(amount, source=source, external_ref=external_ref, expires_at=expires_at)
            balance = await ledger.balance()
        return grant_result, balance

    grant_result, balance = _run(_grant)

    if _json_output:
        _write_json({"created": grant_result.created, "lot": _lot_dict(grant_result.lot), "balance": balance})
    elif grant_result.created:
        console.print(f"[green]✓[/green] Granted {amount} credit(s) to {user_id} (lot {grant_result.lot.id[:12]})")
        console.print(f"Balance: [cyan]{balance}[/cyan]")
    else:
        console.print(f"[yellow]Reference {external_ref} was already granted as lot {grant_result.lot.id[:12]}[/yellow]")


@app.command()
def balance(
    user_id: str = typer.Argument(..., help="User to inspect."),
) -> None:
    """Show a user's spendable balance and active lots."""
    from metergate_core.ledger.credit_ledger import CreditLedger

    async def _balance(factory: async_sessionmaker[AsyncSession]) -> Any:
        async with factory() as session:
            ledger = CreditLedger(session, user_id)
            return await ledger.balance(), await ledger.lots()

    total, lots = _run(_balance)

    if _json_output:
        _write_json({"user_id": user_id, "balance": total, "lots": [_lot_dict(lot) for lot in lots]})
    else:
        display_balance(console, user_id, total, lots)


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------


@app.command()
def usage(
    user_id: str = typer.Argument(..., help="User to inspect."),
    catalog_path: Path | None = typer.Option(
        None,
        "--catalog",
        help="Feature catalog JSON (defaults to METERGATE_FEATURE_CATALOG_PATH or the built-in table).",
        exists=True,
        dir_okay=False,
    ),
) -> None:
    """Show free-quota usage per feature for the current billing period."""
    from metergate_core.config import load_settings
    from metergate_core.features.catalog import load_catalog
    from metergate_core.ledger.quota_ledger import QuotaLedger, billing_period

    catalog = load_catalog(catalog_path or load_settings().feature_catalog_path)

    async def _usage(factory: async_sessionmaker[AsyncSession]) -> Any:
        async with factory() as session:
            return await QuotaLedger(session, user_id, catalog).usage_summary()

    summary = _run(_usage)
    period = billing_period()

    if _json_output:
        _write_json(
            {
                "user_id": user_id,
                "period": period,
                "features": {
                    name: {"used": status.used, "limit": status.limit, "remaining": status.remaining}
                    for name, status in summary.items()
                },
            }
        )
    else:
        display_usage(console, user_id, period, summary)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@app.command("job-status")
def job_status(
    user_id: str = typer.Argument(..., help="Owner of the job."),
    feature: str = typer.Argument(..., help="Feature the job ran."),
    key: str = typer.Argument(..., help="Idempotency key of the job."),
) -> None:
    """Show the job recorded for an idempotency key."""
    from metergate_core.ledger.job_registry import JobRegistry

    async def _lookup(factory: async_sessionmaker[AsyncSession]) -> Any:
        async with factory() as session:
            return await JobRegistry(session, user_id).get(feature, key)

    job = _run(_lookup)
    if job is None:
        console.print(f"[yellow]No job for {user_id}/{feature}/{key}[/yellow]")
        raise typer.Exit(code=1)

    if _json_output:
        _write_json(
            {
                "id": job.id,
                "user_id": job.user_id,
                "feature": job.feature,
                "idempotency_key": job.idempotency_key,
                "status": job.status.value,
                "attempts": job.attempts,
                "result": job.result,
                "error_code": job.error_code,
                "error_message": job.error_message,
                "charge_mode": job.charge_mode.value if job.charge_mode else None,
                "charge_amount": job.charge_amount,
                "charge_state": job.charge_state.value,
                "charge_error": job.charge_error,
                "created_at": job.created_at,
                "updated_at": job.updated_at,
            }
        )
    else:
        display_job(console, job)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@app.command()
def reconcile(
    min_age: float = typer.Option(
        30.0,
        "--min-age",
        help="Only settle charges pending for at least this many seconds.",
    ),
    max_attempts: int = typer.Option(
        5,
        "--max-attempts",
        help="Failed attempts after which a charge is parked as failed.",
    ),
) -> None:
    """Settle charges left pending by failed inline settlement."""
    from metergate_core.gate.charges import ChargeCommitter
    from metergate_core.state.repository import JobRepository

    async def _reconcile(factory: async_sessionmaker[AsyncSession]) -> Any:
        committer = ChargeCommitter(factory, max_attempts=max_attempts)
        outcomes = await committer.drain_pending(min_age=timedelta(seconds=min_age))
        async with factory() as session:
            states = await JobRepository(session).count_by_charge_state()
        return outcomes, states

    outcomes, states = _run(_reconcile)

    if _json_output:
        _write_json({"settled": outcomes, "charge_states": states})
    else:
        display_reconcile(console, outcomes, states)


@app.command("expire-lots")
def expire_lots() -> None:
    """Zero every credit lot whose expiry has passed."""
    from metergate_core.ledger.credit_ledger import expire_due_lots

    async def _expire(factory: async_sessionmaker[AsyncSession]) -> Any:
        async with factory.begin() as session:
            return await expire_due_lots(session)

    summary = _run(_expire)

    if _json_output:
        _write_json({"lots_expired": summary.lots_expired, "credits_expired": summary.credits_expired})
    elif summary.lots_expired:
        console.print(
            f"[green]✓[/green] Expired {summary.lots_expired} lot(s) holding {summary.credits_expired} credit(s)"
        )
    else:
        console.print("[dim]No lots were due to expire.[/dim]")
