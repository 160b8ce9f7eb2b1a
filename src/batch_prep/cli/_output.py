"""Output helpers: Rich tables or JSON depending on ``--json``."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from rich.table import Table

from batch_prep.plan import StepState

if TYPE_CHECKING:
    from batch_prep.cli._context import CliContext
    from batch_prep.plan import PlanReport

_STATE_STYLES = {
    StepState.SUCCEEDED: "green",
    StepState.SKIPPED: "cyan",
    StepState.FAILED: "bold red",
    StepState.NOT_RUN: "dim",
    StepState.PENDING: "dim",
    StepState.RUNNING: "yellow",
}


def print_result(ctx: CliContext, data: Any, *, title: str = "") -> None:
    """Print *data* as a key/value table or raw JSON."""
    if ctx.json_mode:
        ctx.console.print_json(json.dumps(data, default=str))
        return
    if isinstance(data, dict):
        table = Table(title=title or None, show_header=False)
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            table.add_row(str(key), str(value))
        ctx.console.print(table)
    else:
        ctx.console.print(data)


def print_reports(ctx: CliContext, reports: list[PlanReport]) -> None:
    """One table per plan: step, state, reason/error, duration."""
    for report in reports:
        title = f"{report.plan} plan" + (" (dry-run)" if report.dry_run else "")
        table = Table(title=title)
        table.add_column("Step")
        table.add_column("State")
        table.add_column("Detail")
        table.add_column("Duration", justify="right")
        for record in report.records:
            style = _STATE_STYLES.get(record.state, "")
            duration = f"{record.duration_seconds:.0f}s" if record.duration_seconds else ""
            table.add_row(
                record.name,
                f"[{style}]{record.state.value}[/{style}]" if style else record.state.value,
                record.error or record.reason,
                duration,
            )
        ctx.console.print(table)


def print_success(ctx: CliContext, message: str) -> None:
    """Print a success message to stderr."""
    ctx.err_console.print(f"[green]{message}[/green]")

