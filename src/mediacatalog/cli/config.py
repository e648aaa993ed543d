"""CLI commands for the background services configuration file."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
import yaml

from ..orchestrator.config import (
    DEFAULT_HOME,
    BackgroundServicesConfig,
    ConfigurationManager,
)
from ..orchestrator.exceptions import ConfigurationError

config_app = typer.Typer(help="Manage background services configuration")


@config_app.command("validate")
def validate_config(
    config_path: Path = typer.Option(
        DEFAULT_HOME / "config.yaml",
        "--config",
        help="Path to configuration file"
    ),
) -> None:
    """Validate the configuration file without loading it."""
    errors = ConfigurationManager(config_path=config_path).validate()

    if not errors:
        typer.echo(f"Configuration is valid: {config_path}")
        return

    typer.echo(f"Configuration validation failed: {config_path}")
    typer.echo("\nErrors:")
    for error in errors:
        typer.echo(f"  - {error}")
    raise typer.Exit(code=1)


@config_app.command("show")
def show_config(
    config_path: Path = typer.Option(
        DEFAULT_HOME / "config.yaml",
        "--config",
        help="Path to configuration file"
    ),
    section: Optional[str] = typer.Option(
        None,
        "--section",
        help="Show a single section (storage, scheduler, monitor)"
    ),
    format: str = typer.Option(
        "yaml",
        "--format",
        help="Output format (yaml or json)"
    ),
) -> None:
    """Display the effective configuration, defaults included."""
    try:
        config = ConfigurationManager(config_path=config_path).load()
    except ConfigurationError as exc:
        typer.echo(f"Failed to load configuration: {exc}")
        raise typer.Exit(code=1)

    data = config.model_dump(mode="json")
    if section:
        if section not in data:
            typer.echo(f"Unknown section: {section}")
            typer.echo(f"Available sections: {', '.join(data.keys())}")
            raise typer.Exit(code=1)
        data = {section: data[section]}

    if format == "json":
        output = json.dumps(data, indent=2)
    else:
        output = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    typer.echo(output)


@config_app.command("init")
def init_config(
    config_path: Path = typer.Option(
        DEFAULT_HOME / "config.yaml",
        "--config",
        help="Path to configuration file"
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
) -> None:
    """Write a configuration file populated with defaults."""
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists: {config_path} (use --force to overwrite)")
        raise typer.Exit(code=1)
    ConfigurationManager(config_path=config_path).save(BackgroundServicesConfig())
    typer.echo(f"Wrote default configuration to {config_path}")
