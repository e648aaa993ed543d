"""Source, change-event and configuration models for library monitoring."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator

MIN_POLLING_INTERVAL_SECONDS = 30

VIDEO_EXTENSIONS = frozenset(
    {".mkv", ".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".m4v", ".mpg", ".mpeg", ".ts", ".m2ts"}
)
AUDIO_EXTENSIONS = frozenset(
    {".mp3", ".flac", ".m4a", ".aac", ".ogg", ".wav", ".wma", ".alac", ".aiff", ".opus"}
)
MEDIA_EXTENSIONS = VIDEO_EXTENSIONS | AUDIO_EXTENSIONS


class SourceType(str, Enum):
    LOCAL = "local"
    KODI_LOCAL = "kodi-local"
    PLEX = "plex"
    JELLYFIN = "jellyfin"
    EMBY = "emby"
    KODI = "kodi"

    @property
    def is_watchable(self) -> bool:
        """Whether changes are observed on the filesystem rather than polled."""
        return self in (SourceType.LOCAL, SourceType.KODI_LOCAL)


DEFAULT_POLLING_INTERVALS: Dict[SourceType, int] = {
    SourceType.PLEX: 300,
    SourceType.JELLYFIN: 300,
    SourceType.EMBY: 300,
    SourceType.KODI: 300,
    SourceType.KODI_LOCAL: 60,
    SourceType.LOCAL: 60,
}


class ChangeType(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"
    MIXED = "mixed"


@dataclass(slots=True)
class MonitoredSource:
    source_id: str
    source_type: SourceType
    display_name: str
    connection_config: Dict[str, Any] = field(default_factory=dict)
    is_enabled: bool = True

    @property
    def watch_path(self) -> Optional[str]:
        """Filesystem path to observe for watchable sources."""
        if self.source_type is SourceType.LOCAL:
            return self.connection_config.get("folder_path")
        if self.source_type is SourceType.KODI_LOCAL:
            return self.connection_config.get("database_path")
        return None


@dataclass(slots=True)
class LibraryInfo:
    library_id: str
    library_name: str
    is_enabled: bool = True


@dataclass(slots=True, frozen=True)
class ChangedItem:
    """Preview entry describing one item touched by a scan."""

    title: str
    change: ChangeType
    path: Optional[str] = None
    media_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "change": self.change.value,
            "path": self.path,
            "media_type": self.media_type,
        }


@dataclass(frozen=True)
class ChangeEvent:
    """Changes detected in one library during one detection cycle."""

    source_id: str
    source_name: str
    source_type: SourceType
    library_id: str
    library_name: str
    change_type: ChangeType
    item_count: int
    items: tuple
    detected_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_name": self.source_name,
            "source_type": self.source_type.value,
            "library_id": self.library_id,
            "library_name": self.library_name,
            "change_type": self.change_type.value,
            "item_count": self.item_count,
            "items": [item.to_dict() for item in self.items],
            "detected_at": self.detected_at.isoformat(),
        }


def classify_change(added: int, updated: int, removed: int) -> Optional[ChangeType]:
    """Collapse per-kind counts into a single change type.

    Returns ``None`` when nothing changed and ``MIXED`` when more than one
    kind of change happened.
    """
    kinds = [
        change
        for change, count in (
            (ChangeType.ADDED, added),
            (ChangeType.UPDATED, updated),
            (ChangeType.REMOVED, removed),
        )
        if count > 0
    ]
    if not kinds:
        return None
    if len(kinds) > 1:
        return ChangeType.MIXED
    return kinds[0]


def is_media_path(path: str) -> bool:
    """Check whether ``path`` names a visible media file."""
    parts = path.replace("\\", "/").split("/")
    if any(part.startswith(".") and part not in (".", "..") for part in parts):
        return False
    name = parts[-1]
    dot = name.rfind(".")
    if dot <= 0:
        return False
    return name[dot:].lower() in MEDIA_EXTENSIONS


class MonitoringConfig(BaseModel):
    """Process-wide monitoring settings.

    Attributes:
        enabled: Master switch for live monitoring
        start_on_launch: Start monitoring automatically at startup when enabled
        pause_during_manual_scan: Pause monitoring while scheduler jobs run
        polling_intervals: Configured polling interval per source type (seconds)
    """

    enabled: bool = Field(default=False, description="Enable live monitoring")
    start_on_launch: bool = Field(default=True, description="Start monitoring on launch")
    pause_during_manual_scan: bool = Field(
        default=True,
        description="Pause monitoring while scheduler jobs run"
    )
    polling_intervals: Dict[SourceType, int] = Field(
        default_factory=lambda: dict(DEFAULT_POLLING_INTERVALS),
        description="Polling interval per source type in seconds"
    )

    class Config:
        """Pydantic configuration."""
        validate_assignment = True
        extra = "forbid"

    @field_validator("polling_intervals")
    @classmethod
    def fill_missing_intervals(cls, v: Dict[SourceType, int]) -> Dict[SourceType, int]:
        """Default any source type missing from the mapping."""
        merged = dict(DEFAULT_POLLING_INTERVALS)
        merged.update(v)
        return merged

    def effective_interval(self, source_type: SourceType) -> int:
        """Polling interval for ``source_type`` never below the floor."""
        configured = self.polling_intervals.get(
            source_type, DEFAULT_POLLING_INTERVALS[source_type]
        )
        return max(MIN_POLLING_INTERVAL_SECONDS, configured)


@dataclass(slots=True)
class MonitorStatus:
    is_active: bool
    is_paused: bool
    last_check: Dict[str, datetime] = field(default_factory=dict)
    watched_sources: List[str] = field(default_factory=list)
    polled_sources: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_active": self.is_active,
            "is_paused": self.is_paused,
            "last_check": {key: value.isoformat() for key, value in self.last_check.items()},
            "watched_sources": list(self.watched_sources),
            "polled_sources": list(self.polled_sources),
        }


def preview(items: Iterable[ChangedItem], limit: int) -> tuple:
    return tuple(list(items)[:limit])
