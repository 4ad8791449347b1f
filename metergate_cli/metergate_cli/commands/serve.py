"""``metergate serve`` -- run the metering API.

Starts the FastAPI application under uvicorn.  Without
``API_DATABASE_URL`` the API uses the local SQLite store and creates its
tables on startup, so a single command gives a working gate.
"""

from __future__ import annotations

import logging
import os

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

logger = logging.getLogger(__name__)


def serve_command(
    port: int = typer.Option(
        8000,
        "--port",
        "-p",
        help="API server port.",
    ),
    host: str = typer.Option(
        "127.0.0.1",
        "--host",
        help="Host to bind the API server to.",
    ),
    worker_url: str | None = typer.Option(
        None,
        "--worker-url",
        help="Generation worker base URL (overrides API_WORKER_URL).",
    ),
    no_maintenance: bool = typer.Option(
        False,
        "--no-maintenance",
        help="Disable the background charge reconciliation and lot expiry task.",
    ),
    reload: bool = typer.Option(
        False,
        "--reload",
        help="Enable auto-reload on code changes.",
    ),
) -> None:
    """Start the metering API server."""
    import uvicorn

    console = Console(stderr=True)

    if worker_url:
        os.environ["API_WORKER_URL"] = worker_url
    if no_maintenance:
        os.environ["API_MAINTENANCE_ENABLED"] = "false"

    console.print(
        Panel(
            _build_services_table(host, port),
            title="Metergate API",
            border_style="blue",
        )
    )
    console.print("[dim]Press Ctrl+C to stop.[/dim]\n")

    uvicorn.run(
        "metergate_api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
        access_log=False,
    )


def _build_services_table(host: str, port: int) -> Table:
    table = Table(show_header=True, header_style="bold", expand=False)
    table.add_column("Setting")
    table.add_column("Value")

    table.add_row("API", f"http://{host}:{port}/api/v1")
    table.add_row("OpenAPI docs", f"http://{host}:{port}/docs")
    table.add_row("Database", os.environ.get("API_DATABASE_URL", "sqlite (.metergate/state.db)"))
    table.add_row("Worker", os.environ.get("API_WORKER_URL", "http://localhost:8001"))
    table.add_row(
        "Maintenance",
        "disabled" if os.environ.get("API_MAINTENANCE_ENABLED", "").lower() == "false" else "enabled",
    )
    return table
