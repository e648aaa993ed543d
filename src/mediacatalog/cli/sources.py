"""CLI commands for the media source catalog."""

from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

import typer
from rich.table import Table

from ..monitoring.models import LibraryInfo, MonitoredSource, SourceType
from ..monitoring.network import is_network_path
from ..orchestrator.exceptions import SourceNotFoundError
from .common import (
    CONFIG_OPTION_HELP,
    DATABASE_OPTION_HELP,
    console,
    format_timestamp,
    open_store,
)

sources_app = typer.Typer(help="Media source catalog")


def _describe_watch(source: MonitoredSource) -> str:
    if not source.source_type.is_watchable:
        return "poll"
    path = source.watch_path
    if not path:
        return "poll"
    return "watch (polling)" if is_network_path(path) else "watch"


@sources_app.command("list")
def list_command(
    format_output: str = typer.Option("table", "--format", help="Output format: table or json"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    database: Optional[Path] = typer.Option(None, "--database", help=DATABASE_OPTION_HELP),
) -> None:
    """List configured sources and their libraries."""
    store = open_store(config_path, database)
    sources = store.list_sources()

    if format_output == "json":
        payload = [
            {
                "source_id": source.source_id,
                "source_type": source.source_type.value,
                "display_name": source.display_name,
                "is_enabled": source.is_enabled,
                "libraries": [
                    {
                        "library_id": lib.library_id,
                        "library_name": lib.library_name,
                        "is_enabled": lib.is_enabled,
                        "last_scan": (
                            last.isoformat()
                            if (last := store.get_last_scan_time(source.source_id, lib.library_id))
                            else None
                        ),
                    }
                    for lib in store.list_libraries(source.source_id)
                ],
            }
            for source in sources
        ]
        console.print(json.dumps(payload, indent=2))
        return

    if not sources:
        console.print("[yellow]No sources configured[/yellow]")
        return

    table = Table(title=f"Media Sources ({len(sources)} total)")
    table.add_column("Source", style="cyan")
    table.add_column("Type", style="green")
    table.add_column("Status", style="yellow")
    table.add_column("Detection")
    table.add_column("Library")
    table.add_column("Last Scan", style="magenta")

    for source in sources:
        status = "enabled" if source.is_enabled else "disabled"
        libraries = store.list_libraries(source.source_id)
        if not libraries:
            table.add_row(source.display_name, source.source_type.value, status, _describe_watch(source), "-", "-")
            continue
        for index, lib in enumerate(libraries):
            table.add_row(
                source.display_name if index == 0 else "",
                source.source_type.value if index == 0 else "",
                status if index == 0 else "",
                _describe_watch(source) if index == 0 else "",
                lib.library_name if lib.is_enabled else f"{lib.library_name} (disabled)",
                format_timestamp(store.get_last_scan_time(source.source_id, lib.library_id)),
            )
    console.print(table)


@sources_app.command("add")
def add_command(
    source_id: str = typer.Argument(..., help="Unique source identifier"),
    source_type: SourceType = typer.Option(..., "--type", help="Source type"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    path: Optional[Path] = typer.Option(None, "--path", help="Library folder or database file for local sources"),
    url: Optional[str] = typer.Option(None, "--url", help="Server URL for remote sources"),
    library: List[str] = typer.Option([], "--library", help="Library as ID=NAME (repeatable)"),
    disabled: bool = typer.Option(False, "--disabled", help="Register the source disabled"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    database: Optional[Path] = typer.Option(None, "--database", help=DATABASE_OPTION_HELP),
) -> None:
    """Register or update a media source."""
    connection: dict = {}
    if source_type is SourceType.LOCAL:
        if path is None:
            console.print("[red]--path is required for local sources[/red]")
            raise typer.Exit(1)
        connection["folder_path"] = str(path.expanduser())
    elif source_type is SourceType.KODI_LOCAL:
        if path is None:
            console.print("[red]--path is required for kodi-local sources[/red]")
            raise typer.Exit(1)
        connection["database_path"] = str(path.expanduser())
    elif url:
        connection["server_url"] = url

    libraries = []
    for value in library:
        library_id, sep, library_name = value.partition("=")
        if not sep or not library_id:
            console.print(f"[red]Expected ID=NAME, got {value!r}[/red]")
            raise typer.Exit(1)
        libraries.append(LibraryInfo(library_id=library_id, library_name=library_name or library_id))

    store = open_store(config_path, database)
    store.upsert_source(
        MonitoredSource(
            source_id=source_id,
            source_type=source_type,
            display_name=name or source_id,
            connection_config=connection,
            is_enabled=not disabled,
        )
    )
    if libraries:
        store.set_libraries(source_id, libraries)
    console.print(f"[green]Saved source {source_id}[/green]")


@sources_app.command("remove")
def remove_command(
    source_id: str = typer.Argument(..., help="Source identifier"),
    config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_OPTION_HELP),
    database: Optional[Path] = typer.Option(None, "--database", help=DATABASE_OPTION_HELP),
) -> None:
    """Remove a media source and its libraries."""
    store = open_store(config_path, database)
    try:
        store.delete_source(source_id)
    except SourceNotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Removed source {source_id}[/green]")
