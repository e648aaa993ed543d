"""Helpers shared by the command line tools."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from ..orchestrator.config import ConfigurationManager
from ..orchestrator.exceptions import ConfigurationError
from ..persistence.sqlite_store import SQLiteStore

console = Console()

CONFIG_OPTION_HELP = "Path to the background services YAML configuration"
DATABASE_OPTION_HELP = "SQLite database path (overrides the configuration)"


def open_store(config_path: Optional[Path] = None, database: Optional[Path] = None) -> SQLiteStore:
    """Open the catalog database named on the command line or in the configuration."""
    if database is not None:
        return SQLiteStore(Path(database).expanduser())
    try:
        config = ConfigurationManager(config_path).load()
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    return SQLiteStore(config.storage.database_path)


def format_timestamp(value: Optional[datetime]) -> str:
    """Format a timestamp as a relative age for display."""
    if value is None:
        return "never"
    now = datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    seconds = (now - value).total_seconds()
    if seconds < 60:
        return f"{int(seconds)}s ago"
    elif seconds < 3600:
        return f"{int(seconds / 60)}m ago"
    elif seconds < 86400:
        return f"{int(seconds / 3600)}h ago"
    else:
        return f"{int(seconds / 86400)}d ago"
