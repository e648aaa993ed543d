"""Persistence of monitoring preferences through the settings store."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from pydantic import ValidationError

from ..orchestrator.exceptions import ConfigurationError
from ..orchestrator.ports import PersistentStore
from .models import (
    DEFAULT_POLLING_INTERVALS,
    MIN_POLLING_INTERVAL_SECONDS,
    MonitoringConfig,
    SourceType,
)

logger = logging.getLogger(__name__)

ENABLED_KEY = "monitoring_enabled"
START_ON_LAUNCH_KEY = "monitoring_start_on_launch"
PAUSE_DURING_SCAN_KEY = "monitoring_pause_during_scan"
INTERVAL_KEY_PREFIX = "monitoring_interval_"

_BOOLEAN_KEYS = {
    "enabled": ENABLED_KEY,
    "start_on_launch": START_ON_LAUNCH_KEY,
    "pause_during_manual_scan": PAUSE_DURING_SCAN_KEY,
}


def interval_key(source_type: SourceType) -> str:
    return f"{INTERVAL_KEY_PREFIX}{source_type.value}"


class MonitoringSettingsStore:
    """Reads and writes :class:`MonitoringConfig` one setting at a time."""

    def __init__(self, store: PersistentStore) -> None:
        self._store = store

    def load(self) -> MonitoringConfig:
        intervals: Dict[SourceType, int] = dict(DEFAULT_POLLING_INTERVALS)
        for source_type in SourceType:
            raw = self._store.get_setting(interval_key(source_type))
            if not raw:
                continue
            try:
                intervals[source_type] = max(MIN_POLLING_INTERVAL_SECONDS, int(raw))
            except ValueError:
                logger.warning(
                    "Ignoring invalid polling interval",
                    extra={"source_type": source_type.value, "value": raw},
                )

        return MonitoringConfig(
            # Opt-in; everything else defaults on
            enabled=self._store.get_setting(ENABLED_KEY) == "true",
            start_on_launch=self._store.get_setting(START_ON_LAUNCH_KEY) != "false",
            pause_during_manual_scan=self._store.get_setting(PAUSE_DURING_SCAN_KEY) != "false",
            polling_intervals=intervals,
        )

    def apply(self, current: MonitoringConfig, changes: Mapping[str, Any]) -> MonitoringConfig:
        """Validate a partial update, persist the fields it names, return the result.

        Raises:
            ConfigurationError: If the update names unknown fields or invalid values
        """
        data = current.model_dump()
        try:
            updates = dict(changes)
            if "polling_intervals" in updates:
                merged = dict(current.polling_intervals)
                merged.update(
                    {SourceType(key): value for key, value in updates["polling_intervals"].items()}
                )
                updates["polling_intervals"] = merged
            data.update(updates)
            updated = MonitoringConfig(**data)
        except (ValidationError, ValueError) as exc:
            raise ConfigurationError(f"Invalid monitoring configuration: {exc}") from exc

        for field_name, key in _BOOLEAN_KEYS.items():
            if field_name in changes:
                self._store.set_setting(key, "true" if getattr(updated, field_name) else "false")
        if "polling_intervals" in changes:
            for key in changes["polling_intervals"]:
                source_type = SourceType(key)
                self._store.set_setting(
                    interval_key(source_type),
                    str(updated.polling_intervals[source_type]),
                )
        return updated
