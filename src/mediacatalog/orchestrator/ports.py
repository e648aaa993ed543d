"""Interfaces the scheduler and the change monitor depend on.

Concrete scanners, analyzers, storage and UI channels live outside this
package and are handed to the services at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Sequence

from ..monitoring.models import (
    ChangeEvent,
    ChangedItem,
    LibraryInfo,
    MonitoredSource,
    MonitorStatus,
)
from .cancellation import CancellationToken
from .models import ActivityLogEntry, Job, JobProgress, QueueState

ProgressCallback = Callable[[JobProgress], None]


@dataclass
class ScanOptions:
    """Options for a single library scan.

    A scan with neither ``since_timestamp`` nor ``target_files`` is a full
    scan; ``since_timestamp`` makes it incremental and ``target_files``
    restricts it to exactly those paths.

    Scans started by the change monitor set ``background`` and never count
    as a manual scan, even when they fall back to a full scan.
    """

    since_timestamp: Optional[datetime] = None
    target_files: Optional[List[str]] = None
    on_progress: Optional[ProgressCallback] = None
    cancel_token: Optional[CancellationToken] = None
    background: bool = False

    @property
    def is_full_scan(self) -> bool:
        return self.since_timestamp is None and not self.target_files

    @property
    def is_manual(self) -> bool:
        return self.is_full_scan and not self.background


@dataclass
class ScanResult:
    success: bool
    items_scanned: int = 0
    items_added: int = 0
    items_updated: int = 0
    items_removed: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0
    changed_items: List[ChangedItem] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return (self.items_added + self.items_updated + self.items_removed) > 0


@dataclass
class AnalysisResult:
    completed: bool
    analyzed: int = 0


class ScanCoordinator(Protocol):
    async def scan_library(
        self,
        source_id: str,
        library_id: str,
        options: Optional[ScanOptions] = None,
    ) -> ScanResult:
        ...

    def is_manual_scan_in_progress(self) -> bool:
        ...

    def stop_scan(self) -> None:
        ...


class CompletenessAnalyzer(Protocol):
    async def analyze_all(
        self,
        on_progress: ProgressCallback,
        source_id: Optional[str] = None,
        library_id: Optional[str] = None,
    ) -> AnalysisResult:
        ...

    def cancel(self) -> None:
        ...


class WishlistCompleter(Protocol):
    async def check_and_complete(self) -> int:
        ...


class PersistentStore(Protocol):
    def get_last_scan_time(self, source_id: str, library_id: str) -> Optional[datetime]:
        ...

    def set_last_scan_time(self, source_id: str, library_id: str, when: datetime) -> None:
        ...

    def save_task_history(self, job: Job) -> None:
        ...

    def list_task_history(self, limit: int) -> List[Job]:
        ...

    def clear_task_history(self) -> None:
        ...

    def append_activity(self, entry: ActivityLogEntry) -> None:
        ...

    def list_activity(self, partition: str, limit: int) -> List[ActivityLogEntry]:
        ...

    def clear_activity(self, partition: str) -> None:
        ...

    def get_setting(self, key: str) -> Optional[str]:
        ...

    def set_setting(self, key: str, value: str) -> None:
        ...


class SourceCatalog(Protocol):
    def list_enabled_sources(self) -> List[MonitoredSource]:
        ...

    def get_source(self, source_id: str) -> Optional[MonitoredSource]:
        ...

    def list_libraries(self, source_id: str) -> List[LibraryInfo]:
        ...


class MonitorControl(Protocol):
    """What the scheduler needs from the change monitor."""

    def is_active_and_enabled(self) -> bool:
        ...

    def pause(self) -> None:
        ...

    def resume(self) -> None:
        ...


class ChangeSink(Protocol):
    """UI-facing push channel. Every method is fire-and-forget."""

    def queue_updated(self, state: QueueState) -> None:
        ...

    def task_progress(self, job: Job) -> None:
        ...

    def task_completed(self, job: Job) -> None:
        ...

    def scan_completed(self, job: Job) -> None:
        ...

    def history_updated(self, task_log: Sequence[ActivityLogEntry], monitoring_log: Sequence[ActivityLogEntry]) -> None:
        ...

    def library_updated(self, kind: str) -> None:
        ...

    def monitor_status_changed(self, status: MonitorStatus) -> None:
        ...

    def monitor_event(self, message: str) -> None:
        ...

    def source_checked(self, source_id: str, checked_at: datetime) -> None:
        ...

    def changes_detected(self, events: Sequence[ChangeEvent]) -> None:
        ...
