"""Background services configuration with validation.

Process-level settings (storage location, history capacities, monitor
timings) are loaded from YAML and validated with Pydantic. User-facing
monitoring preferences are stored separately through the persistent store,
see :mod:`mediacatalog.monitoring.settings`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".mediacatalog"


class StorageConfig(BaseModel):
    """Persistent storage configuration.

    Attributes:
        database_path: SQLite database path
    """

    database_path: Path = Field(
        default=DEFAULT_HOME / "catalog.db",
        description="SQLite database path"
    )

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, v: Path) -> Path:
        """Expand user directory markers."""
        return v.expanduser()


class SchedulerConfig(BaseModel):
    """Task scheduler configuration.

    Attributes:
        max_completed_tasks: Completed jobs kept in memory (1-1000)
        max_history_entries: Activity entries kept in memory per log (1-10000)
        progress_interval_seconds: Minimum spacing of progress notifications
    """

    max_completed_tasks: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Completed jobs kept in memory"
    )
    max_history_entries: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Activity entries kept in memory per log"
    )
    progress_interval_seconds: float = Field(
        default=0.25,
        gt=0.0,
        le=10.0,
        description="Minimum spacing of progress notifications"
    )


class MonitorTimings(BaseModel):
    """Library change monitor timings.

    Attributes:
        debounce_seconds: Quiet period before a batch of file changes is scanned
        write_stability_seconds: Time a file must stay unchanged before it is reported
        settle_poll_seconds: How often a settling file is re-checked
        network_poll_seconds: Polling observer interval for network paths
        startup_delay_seconds: Delay before monitoring starts on launch
        first_poll_delay_seconds: Delay before a polled source's first check
        poll_timeout_seconds: Hard bound on a single polling check
        max_changes_per_batch: Batches above this size are discarded
        watch_health_seconds: How often native watchers are checked for liveness
        preview_size: Maximum items carried in a change event
    """

    debounce_seconds: float = Field(default=2.0, gt=0.0, le=60.0)
    write_stability_seconds: float = Field(default=2.0, ge=0.0, le=60.0)
    settle_poll_seconds: float = Field(default=0.5, gt=0.0, le=10.0)
    network_poll_seconds: float = Field(default=10.0, gt=0.0, le=600.0)
    startup_delay_seconds: float = Field(default=5.0, ge=0.0, le=600.0)
    first_poll_delay_seconds: float = Field(default=5.0, ge=0.0, le=600.0)
    poll_timeout_seconds: float = Field(default=120.0, gt=0.0, le=3600.0)
    max_changes_per_batch: int = Field(default=50, ge=1, le=10000)
    watch_health_seconds: float = Field(default=5.0, gt=0.0, le=600.0)
    preview_size: int = Field(default=20, ge=0, le=500)


class BackgroundServicesConfig(BaseModel):
    """Main background services configuration.

    Attributes:
        version: Configuration schema version
        storage: Persistent storage configuration
        scheduler: Task scheduler configuration
        monitor: Change monitor timings
    """

    version: int = Field(
        default=1,
        description="Configuration schema version"
    )
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    monitor: MonitorTimings = Field(default_factory=MonitorTimings)

    class Config:
        """Pydantic configuration."""
        validate_assignment = True  # Validate on field assignment
        extra = "forbid"  # Reject unknown fields


def _format_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


class ConfigurationManager:
    """Loads, saves and validates the background services configuration.

    Attributes:
        config_path: Path to configuration file
    """

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Path to config file (default: ~/.mediacatalog/config.yaml)
        """
        self._config_path = config_path or (DEFAULT_HOME / "config.yaml")
        self._config: Optional[BackgroundServicesConfig] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> BackgroundServicesConfig:
        """Load and validate configuration.

        Returns:
            Validated configuration, defaults when the file does not exist

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if self._config_path.exists():
            try:
                with open(self._config_path, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Unreadable configuration: {exc}") from exc

            try:
                self._config = BackgroundServicesConfig(**data)
            except ValidationError as exc:
                raise ConfigurationError(
                    f"Invalid configuration: {'; '.join(_format_errors(exc))}"
                ) from exc
        else:
            self._config = BackgroundServicesConfig()

        logger.debug(
            "Loaded background services configuration",
            extra={
                "config_path": str(self._config_path),
                "using_defaults": not self._config_path.exists(),
            },
        )
        return self._config

    def save(self, config: BackgroundServicesConfig) -> None:
        """Save configuration to file.

        Args:
            config: Configuration to save
        """
        self._config_path.parent.mkdir(parents=True, exist_ok=True)

        # Paths serialize as strings in json mode
        data = config.model_dump(mode="json")

        with open(self._config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        self._config = config

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate configuration without loading.

        Args:
            config_path: Optional path to config file to validate

        Returns:
            List of validation errors (empty if valid)
        """
        path = config_path or self._config_path

        if not path.exists():
            return [f"Configuration file not found: {path}"]

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            BackgroundServicesConfig(**data)
        except ValidationError as exc:
            return _format_errors(exc)
        except Exception as exc:  # noqa: BLE001
            return [f"Failed to load configuration: {exc}"]
        return []
