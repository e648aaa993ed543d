"""CLI commands for live monitoring preferences."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.table import Table

from ..monitoring.models import SourceType
from ..monitoring.settings import MonitoringSettingsStore
from ..orchestrator.exceptions import ConfigurationError
from .common import CONFIG_OPTION_HELP, DATABASE_OPTION_HELP, console, open_store

monitor_app = typer.Typer(help="Live library monitoring")
monitor_config_app = typer.Typer(help="Monitoring configuration")
monitor_app.add_typer(monitor_config_app, name="config")


def _parse_intervals(values: List[str]) -> Dict[str, int]:
    intervals: Dict[str, int] = {}
    for value in values:
        source_type, sep, seconds = value.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected TYPE=SECONDS, got {value!r}")
        try:
            SourceType(source_type)
            intervals[source_type] = int(seconds)
        except ValueError:
            raise typer.BadParameter(f"Invalid interval {value!r}")
    return intervals


@monitor_config_app.command("show")
def config_show(
    format_output: str = typer.Option("table", "--format", help="Output format: table or json"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    database: Optional[Path] = typer.Option(None, "--database", help=DATABASE_OPTION_HELP),
) -> None:
    """Show the persisted monitoring configuration."""
    config = MonitoringSettingsStore(open_store(config_path, database)).load()

    if format_output == "json":
        console.print(json.dumps(config.model_dump(mode="json"), indent=2))
        return

    table = Table(title="Monitoring Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("enabled", str(config.enabled))
    table.add_row("start_on_launch", str(config.start_on_launch))
    table.add_row("pause_during_manual_scan", str(config.pause_during_manual_scan))
    for source_type in SourceType:
        table.add_row(
            f"interval ({source_type.value})",
            f"{config.effective_interval(source_type)}s",
        )
    console.print(table)


@monitor_config_app.command("set")
def config_set(
    enabled: Optional[bool] = typer.Option(None, "--enabled/--disabled", help="Enable or disable monitoring"),
    start_on_launch: Optional[bool] = typer.Option(
        None, "--start-on-launch/--no-start-on-launch", help="Start monitoring at launch"
    ),
    pause_during_scan: Optional[bool] = typer.Option(
        None, "--pause-during-scan/--no-pause-during-scan", help="Pause monitoring during manual scans"
    ),
    interval: List[str] = typer.Option([], "--interval", help="Polling interval as TYPE=SECONDS (repeatable)"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    database: Optional[Path] = typer.Option(None, "--database", help=DATABASE_OPTION_HELP),
) -> None:
    """Update monitoring settings. Only the given options are changed."""
    changes: Dict[str, object] = {}
    if enabled is not None:
        changes["enabled"] = enabled
    if start_on_launch is not None:
        changes["start_on_launch"] = start_on_launch
    if pause_during_scan is not None:
        changes["pause_during_manual_scan"] = pause_during_scan
    if interval:
        changes["polling_intervals"] = _parse_intervals(interval)

    if not changes:
        console.print("[yellow]Nothing to change[/yellow]")
        raise typer.Exit(0)

    settings = MonitoringSettingsStore(open_store(config_path, database))
    try:
        updated = settings.apply(settings.load(), changes)
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Updated {', '.join(sorted(changes))}[/green]")
    if "polling_intervals" in changes:
        for key in sorted(changes["polling_intervals"]):
            effective = updated.effective_interval(SourceType(key))
            console.print(f"  {key}: {effective}s")
