"""Domain models for the background task scheduler."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def generate_id(prefix: str = "task") -> str:
    return f"{prefix}_{int(utcnow().timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


class JobKind(str, Enum):
    LIBRARY_SCAN = "library-scan"
    SOURCE_SCAN = "source-scan"
    SERIES_COMPLETENESS = "series-completeness"
    COLLECTION_COMPLETENESS = "collection-completeness"
    MUSIC_COMPLETENESS = "music-completeness"
    MUSIC_SCAN = "music-scan"

    @property
    def is_scan(self) -> bool:
        return self in (JobKind.LIBRARY_SCAN, JobKind.SOURCE_SCAN, JobKind.MUSIC_SCAN)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.QUEUED, JobStatus.RUNNING)


class ActivityKind(str, Enum):
    TASK_COMPLETE = "task-complete"
    TASK_FAILED = "task-failed"
    TASK_CANCELLED = "task-cancelled"
    TASK_INTERRUPTED = "task-interrupted"
    MONITORING = "monitoring"

    @property
    def partition(self) -> str:
        """Storage partition of the activity log this entry belongs to."""
        return "monitoring" if self is ActivityKind.MONITORING else "task"

    @classmethod
    def for_status(cls, status: JobStatus) -> "ActivityKind":
        return {
            JobStatus.COMPLETED: cls.TASK_COMPLETE,
            JobStatus.FAILED: cls.TASK_FAILED,
            JobStatus.CANCELLED: cls.TASK_CANCELLED,
            JobStatus.INTERRUPTED: cls.TASK_INTERRUPTED,
        }[status]


@dataclass(slots=True)
class JobProgress:
    """Progress snapshot reported by a running job's collaborator."""

    current: int
    total: int
    phase: str = ""
    current_item: Optional[str] = None
    percentage: Optional[float] = None

    def with_percentage(self) -> "JobProgress":
        if self.percentage is not None:
            return self
        percentage = (self.current / self.total) * 100 if self.total > 0 else 0.0
        return replace(self, percentage=round(percentage, 1))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "total": self.total,
            "phase": self.phase,
            "current_item": self.current_item,
            "percentage": self.percentage,
        }


@dataclass(slots=True)
class JobResult:
    items_scanned: int = 0
    items_added: int = 0
    items_updated: int = 0
    items_removed: int = 0
    is_first_scan: bool = False

    @property
    def has_changes(self) -> bool:
        return self.items_added > 0 or self.items_updated > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items_scanned": self.items_scanned,
            "items_added": self.items_added,
            "items_updated": self.items_updated,
            "items_removed": self.items_removed,
            "is_first_scan": self.is_first_scan,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobResult":
        return cls(
            items_scanned=int(data.get("items_scanned", 0)),
            items_added=int(data.get("items_added", 0)),
            items_updated=int(data.get("items_updated", 0)),
            items_removed=int(data.get("items_removed", 0)),
            is_first_scan=bool(data.get("is_first_scan", False)),
        )


@dataclass(slots=True)
class JobDefinition:
    """What a caller asks the scheduler to run."""

    kind: JobKind
    label: str
    source_id: Optional[str] = None
    library_id: Optional[str] = None


@dataclass(slots=True)
class Job:
    """A unit of background work owned by the scheduler."""

    id: str
    kind: JobKind
    label: str
    source_id: Optional[str] = None
    library_id: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    progress: Optional[JobProgress] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[JobResult] = None

    @classmethod
    def from_definition(cls, definition: JobDefinition) -> "Job":
        return cls(
            id=generate_id(),
            kind=definition.kind,
            label=definition.label,
            source_id=definition.source_id,
            library_id=definition.library_id,
        )

    def snapshot(self) -> "Job":
        return replace(self)

    def finish(self, status: JobStatus, *, error: Optional[str] = None) -> None:
        """Move the job to a terminal status and stamp its completion time.

        Raises:
            ValueError: If ``status`` is queued or running
        """
        if not status.is_terminal:
            raise ValueError(f"Cannot finish job with status {status.value}")
        self.status = status
        self.completed_at = utcnow()
        if error is not None:
            self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "label": self.label,
            "source_id": self.source_id,
            "library_id": self.library_id,
            "status": self.status.value,
            "progress": self.progress.to_dict() if self.progress else None,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass(slots=True, frozen=True)
class ActivityLogEntry:
    id: str
    timestamp: datetime
    kind: ActivityKind
    message: str
    task_id: Optional[str] = None
    task_kind: Optional[JobKind] = None

    @classmethod
    def create(
        cls,
        kind: ActivityKind,
        message: str,
        *,
        task_id: Optional[str] = None,
        task_kind: Optional[JobKind] = None,
    ) -> "ActivityLogEntry":
        return cls(
            id=generate_id("log"),
            timestamp=utcnow(),
            kind=kind,
            message=message,
            task_id=task_id,
            task_kind=task_kind,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.kind.value,
            "message": self.message,
            "task_id": self.task_id,
            "task_kind": self.task_kind.value if self.task_kind else None,
        }


@dataclass(frozen=True)
class QueueState:
    """Read-only snapshot of the scheduler."""

    current_task: Optional[Job]
    queue: List[Job]
    is_paused: bool
    completed_tasks: List[Job]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_task": self.current_task.to_dict() if self.current_task else None,
            "queue": [job.to_dict() for job in self.queue],
            "is_paused": self.is_paused,
            "completed_tasks": [job.to_dict() for job in self.completed_tasks],
        }
