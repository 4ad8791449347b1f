"""Rich output formatting for the Metergate CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from metergate_core.ledger.credit_ledger import CreditLot
    from metergate_core.ledger.job_registry import Job
    from metergate_core.ledger.quota_ledger import QuotaStatus


# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "succeeded": "green",
    "failed": "red",
    "running": "yellow",
    "blocked": "magenta",
    "applied": "green",
    "pending": "yellow",
    "shortfall": "red",
    "none": "dim",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value is not None else "-"


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


def display_balance(console: Console, user_id: str, balance: int, lots: list[CreditLot]) -> None:
    """Render a user's spendable balance and lots in consumption order.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    user_id:
        The user the lots belong to.
    balance:
        Spendable balance (unexpired lots only).
    lots:
        Lots as returned by :meth:`CreditLedger.lots`.
    """
    console.print(f"[bold]{user_id}[/bold]: [cyan]{balance}[/cyan] credit(s) available")

    if not lots:
        console.print("[dim]No active lots.[/dim]")
        return

    table = Table(title="Credit Lots", show_lines=False, pad_edge=True, expand=False)
    table.add_column("#", style="dim", width=4, justify="right")
    table.add_column("Lot", style="bold")
    table.add_column("Source")
    table.add_column("Remaining", justify="right")
    table.add_column("Original", justify="right")
    table.add_column("Created")
    table.add_column("Expires")

    for idx, lot in enumerate(lots, start=1):
        table.add_row(
            str(idx),
            lot.id[:12],
            lot.source,
            str(lot.amount_remaining),
            str(lot.amount_original),
            _fmt_time(lot.created_at),
            _fmt_time(lot.expires_at),
        )

    console.print(table)


def display_usage(console: Console, user_id: str, period: str, summary: dict[str, QuotaStatus]) -> None:
    """Render free-quota usage per feature for one billing period."""
    table = Table(title=f"Quota usage for {user_id} ({period})", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Feature", style="bold")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")

    for feature, status in sorted(summary.items()):
        used_style = "green" if status.within_quota else "red"
        table.add_row(
            feature,
            f"[{used_style}]{status.used}[/{used_style}]",
            str(status.limit),
            str(status.remaining),
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def display_job(console: Console, job: Job) -> None:
    """Render a single job with its charge settlement state."""
    lines = [
        f"[bold]Job ID:[/bold]    {job.id}",
        f"[bold]Feature:[/bold]   {job.feature}",
        f"[bold]Key:[/bold]       {job.idempotency_key}",
        f"[bold]Status:[/bold]    {_coloured_status(job.status.value)}",
        f"[bold]Attempts:[/bold]  {job.attempts}",
        f"[bold]Updated:[/bold]   {_fmt_time(job.updated_at)}",
    ]
    if job.error_code:
        lines.append(f"[bold]Error:[/bold]     {job.error_code} {job.error_message or ''}".rstrip())
    if job.charge_mode is not None:
        lines.append(
            f"[bold]Charge:[/bold]    {job.charge_mode.value} x{job.charge_amount} "
            f"({_coloured_status(job.charge_state.value)})"
        )
    if job.charge_error:
        lines.append(f"[bold]Charge error:[/bold] {job.charge_error}")

    console.print(Panel("\n".join(lines), title=f"Job for {job.user_id}", border_style="blue"))


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def display_reconcile(console: Console, outcomes: dict[str, int], states: dict[str, int]) -> None:
    """Render a charge-outbox drain and the resulting charge-state counts."""
    if outcomes:
        drained = ", ".join(f"{name}={count}" for name, count in sorted(outcomes.items()))
        console.print(f"[green]Settled pending charges:[/green] {drained}")
    else:
        console.print("[dim]No pending charges were due.[/dim]")

    table = Table(title="Charge States", show_lines=False, pad_edge=True, expand=False)
    table.add_column("State", style="bold")
    table.add_column("Jobs", justify="right")
    for state, count in sorted(states.items()):
        table.add_row(_coloured_status(state), str(count))
    console.print(table)
