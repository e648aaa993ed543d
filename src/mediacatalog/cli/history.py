"""CLI commands for task and monitoring history."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.table import Table

from ..orchestrator.models import JobStatus
from .common import (
    CONFIG_OPTION_HELP,
    DATABASE_OPTION_HELP,
    console,
    format_timestamp,
    open_store,
)

history_app = typer.Typer(help="Task and monitoring history")

_STATUS_STYLES = {
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "yellow",
    JobStatus.INTERRUPTED: "magenta",
}


@history_app.command("tasks")
def tasks_command(
    limit: int = typer.Option(50, "--limit", help="Maximum tasks to show"),
    format_output: str = typer.Option("table", "--format", help="Output format: table or json"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    database: Optional[Path] = typer.Option(None, "--database", help=DATABASE_OPTION_HELP),
) -> None:
    """List finished background tasks, newest first."""
    store = open_store(config_path, database)
    jobs = store.list_task_history(limit)

    if format_output == "json":
        console.print(json.dumps([job.to_dict() for job in jobs], indent=2))
        return

    if not jobs:
        console.print("[yellow]No task history[/yellow]")
        return

    table = Table(title=f"Task History ({len(jobs)} shown)")
    table.add_column("Task ID", style="cyan", no_wrap=True)
    table.add_column("Kind", style="green")
    table.add_column("Label")
    table.add_column("Status")
    table.add_column("Finished", style="magenta")
    table.add_column("Added", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Removed", justify="right")

    for job in jobs:
        style = _STATUS_STYLES.get(job.status, "white")
        result = job.result
        table.add_row(
            job.id,
            job.kind.value,
            job.label,
            f"[{style}]{job.status.value}[/{style}]",
            format_timestamp(job.completed_at),
            str(result.items_added) if result else "-",
            str(result.items_updated) if result else "-",
            str(result.items_removed) if result else "-",
        )
    console.print(table)


@history_app.command("activity")
def activity_command(
    kind: str = typer.Option("task", "--kind", help="Log to show: task or monitoring"),
    limit: int = typer.Option(100, "--limit", help="Maximum entries to show"),
    format_output: str = typer.Option("table", "--format", help="Output format: table or json"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    database: Optional[Path] = typer.Option(None, "--database", help=DATABASE_OPTION_HELP),
) -> None:
    """Show the task or monitoring activity log."""
    if kind not in ("task", "monitoring"):
        console.print(f"[red]Invalid kind: {kind}[/red]")
        console.print("Valid: task, monitoring")
        raise typer.Exit(1)

    store = open_store(config_path, database)
    entries = store.list_activity(kind, limit)

    if format_output == "json":
        console.print(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return

    if not entries:
        console.print(f"[yellow]No {kind} activity[/yellow]")
        return

    table = Table(title=f"{kind.capitalize()} Activity ({len(entries)} shown)")
    table.add_column("When", style="magenta")
    table.add_column("Type", style="green")
    table.add_column("Message")
    for entry in entries:
        table.add_row(format_timestamp(entry.timestamp), entry.kind.value, entry.message)
    console.print(table)


@history_app.command("clear")
def clear_command(
    kind: str = typer.Option("all", "--kind", help="History to clear: task, monitoring or all"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    database: Optional[Path] = typer.Option(None, "--database", help=DATABASE_OPTION_HELP),
) -> None:
    """Delete persisted history."""
    if kind not in ("task", "monitoring", "all"):
        console.print(f"[red]Invalid kind: {kind}[/red]")
        raise typer.Exit(1)
    if not yes and not typer.confirm(f"Clear {kind} history?"):
        raise typer.Exit(0)

    store = open_store(config_path, database)
    if kind in ("task", "all"):
        store.clear_task_history()
        store.clear_activity("task")
    if kind in ("monitoring", "all"):
        store.clear_activity("monitoring")
    console.print(f"[green]Cleared {kind} history[/green]")
