"""Command line entry points for the media catalog background services."""

import logging

import typer
from typer import Typer

from .config import config_app
from .history import history_app
from .monitor import monitor_app
from .sources import sources_app


cli = Typer(help="Media catalog background services")
cli.add_typer(history_app, name="history")
cli.add_typer(monitor_app, name="monitor")
cli.add_typer(sources_app, name="sources")
cli.add_typer(config_app, name="config")


@cli.callback()
def _configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    cli()


__all__ = ["cli", "main", "config_app", "history_app", "monitor_app", "sources_app"]
