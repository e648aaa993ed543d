"""Library change monitoring package."""

from .models import (
    ChangeEvent,
    ChangeType,
    ChangedItem,
    LibraryInfo,
    MonitoredSource,
    MonitoringConfig,
    MonitorStatus,
    SourceType,
)
