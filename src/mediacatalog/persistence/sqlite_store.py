"""SQLite-backed persistent store and source catalog."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from ..monitoring.models import LibraryInfo, MonitoredSource, SourceType
from ..orchestrator.exceptions import SourceNotFoundError
from ..orchestrator.models import (
    ActivityKind,
    ActivityLogEntry,
    Job,
    JobKind,
    JobResult,
    JobStatus,
    parse_timestamp,
    utcnow,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS library_scan_times (
    source_id TEXT NOT NULL,
    library_id TEXT NOT NULL,
    last_scan_at TEXT NOT NULL,
    PRIMARY KEY (source_id, library_id)
);

CREATE TABLE IF NOT EXISTS task_history (
    task_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    label TEXT NOT NULL,
    source_id TEXT,
    library_id TEXT,
    status TEXT NOT NULL CHECK (status IN ('completed', 'failed', 'cancelled', 'interrupted')),
    error TEXT,
    result TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_type TEXT NOT NULL,
    message TEXT NOT NULL,
    task_id TEXT,
    task_kind TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activity_log_type ON activity_log(entry_type, id);

CREATE TABLE IF NOT EXISTS media_sources (
    source_id TEXT PRIMARY KEY,
    source_type TEXT NOT NULL,
    display_name TEXT NOT NULL,
    connection_config TEXT NOT NULL DEFAULT '{}',
    is_enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS source_libraries (
    source_id TEXT NOT NULL REFERENCES media_sources(source_id) ON DELETE CASCADE,
    library_id TEXT NOT NULL,
    library_name TEXT NOT NULL,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (source_id, library_id)
);
"""


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SQLiteStore:
    """Durable settings, scan times, task history, activity log and sources.

    Implements both the persistent store and the source catalog used by
    the background services.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        if str(path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Settings ---------------------------------------------------------

    def get_setting(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set_setting(self, key: str, value: str) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO settings(key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (key, value, utcnow().isoformat()),
                )

    # Scan times -------------------------------------------------------

    def get_last_scan_time(self, source_id: str, library_id: str) -> Optional[datetime]:
        with self._lock:
            row = self._conn.execute(
                "SELECT last_scan_at FROM library_scan_times WHERE source_id = ? AND library_id = ?",
                (source_id, library_id),
            ).fetchone()
        return parse_timestamp(row[0]) if row else None

    def set_last_scan_time(self, source_id: str, library_id: str, when: datetime) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO library_scan_times(source_id, library_id, last_scan_at)
                    VALUES (?, ?, ?)
                    """,
                    (source_id, library_id, when.isoformat()),
                )

    # Task history -----------------------------------------------------

    def save_task_history(self, job: Job) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO task_history(
                        task_id, kind, label, source_id, library_id, status,
                        error, result, created_at, started_at, completed_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.kind.value,
                        job.label,
                        job.source_id,
                        job.library_id,
                        job.status.value,
                        job.error,
                        json.dumps(job.result.to_dict()) if job.result else None,
                        job.created_at.isoformat(),
                        _iso(job.started_at),
                        _iso(job.completed_at),
                    ),
                )

    def list_task_history(self, limit: int) -> List[Job]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT task_id, kind, label, source_id, library_id, status,
                       error, result, created_at, started_at, completed_at
                FROM task_history
                ORDER BY completed_at DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            Job(
                id=task_id,
                kind=JobKind(kind),
                label=label,
                source_id=source_id,
                library_id=library_id,
                status=JobStatus(status),
                error=error,
                result=JobResult.from_dict(json.loads(result)) if result else None,
                created_at=parse_timestamp(created_at),
                started_at=parse_timestamp(started_at),
                completed_at=parse_timestamp(completed_at),
            )
            for (
                task_id, kind, label, source_id, library_id, status,
                error, result, created_at, started_at, completed_at,
            ) in rows
        ]

    def clear_task_history(self) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM task_history")

    # Activity log -----------------------------------------------------

    def append_activity(self, entry: ActivityLogEntry) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO activity_log(entry_type, message, task_id, task_kind, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        entry.kind.value,
                        entry.message,
                        entry.task_id,
                        entry.task_kind.value if entry.task_kind else None,
                        entry.timestamp.isoformat(),
                    ),
                )

    def list_activity(self, partition: str, limit: int) -> List[ActivityLogEntry]:
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT id, entry_type, message, task_id, task_kind, created_at
                FROM activity_log
                WHERE {self._partition_clause(partition)}
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            ActivityLogEntry(
                id=f"db_{row_id}",
                timestamp=parse_timestamp(created_at),
                kind=ActivityKind(entry_type),
                message=message,
                task_id=task_id,
                task_kind=JobKind(task_kind) if task_kind else None,
            )
            for row_id, entry_type, message, task_id, task_kind, created_at in rows
        ]

    def clear_activity(self, partition: str) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    f"DELETE FROM activity_log WHERE {self._partition_clause(partition)}"
                )

    @staticmethod
    def _partition_clause(partition: str) -> str:
        if partition == "monitoring":
            return "entry_type = 'monitoring'"
        if partition == "task":
            return "entry_type LIKE 'task-%'"
        raise ValueError(f"Unknown activity partition: {partition}")

    # Source catalog ---------------------------------------------------

    def upsert_source(self, source: MonitoredSource) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO media_sources(source_id, source_type, display_name, connection_config, is_enabled, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(source_id) DO UPDATE SET
                        source_type = excluded.source_type,
                        display_name = excluded.display_name,
                        connection_config = excluded.connection_config,
                        is_enabled = excluded.is_enabled
                    """,
                    (
                        source.source_id,
                        source.source_type.value,
                        source.display_name,
                        json.dumps(source.connection_config),
                        int(source.is_enabled),
                        utcnow().isoformat(),
                    ),
                )

    def delete_source(self, source_id: str) -> None:
        with self._lock:
            with self._conn:
                cur = self._conn.execute("DELETE FROM media_sources WHERE source_id = ?", (source_id,))
                if cur.rowcount == 0:
                    raise SourceNotFoundError(f"Unknown source {source_id}")
                self._conn.execute("DELETE FROM library_scan_times WHERE source_id = ?", (source_id,))

    def set_libraries(self, source_id: str, libraries: Sequence[LibraryInfo]) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM source_libraries WHERE source_id = ?", (source_id,))
                self._conn.executemany(
                    """
                    INSERT INTO source_libraries(source_id, library_id, library_name, is_enabled)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        (source_id, lib.library_id, lib.library_name, int(lib.is_enabled))
                        for lib in libraries
                    ],
                )

    def list_sources(self) -> List[MonitoredSource]:
        return self._select_sources("")

    def list_enabled_sources(self) -> List[MonitoredSource]:
        return self._select_sources("WHERE is_enabled = 1")

    def get_source(self, source_id: str) -> Optional[MonitoredSource]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT source_id, source_type, display_name, connection_config, is_enabled
                FROM media_sources WHERE source_id = ?
                """,
                (source_id,),
            ).fetchone()
        return self._row_to_source(row) if row else None

    def list_libraries(self, source_id: str) -> List[LibraryInfo]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT library_id, library_name, is_enabled
                FROM source_libraries WHERE source_id = ?
                ORDER BY library_name
                """,
                (source_id,),
            ).fetchall()
        return [
            LibraryInfo(library_id=library_id, library_name=name, is_enabled=bool(enabled))
            for library_id, name, enabled in rows
        ]

    def _select_sources(self, where: str) -> List[MonitoredSource]:
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT source_id, source_type, display_name, connection_config, is_enabled
                FROM media_sources {where}
                ORDER BY display_name
                """
            ).fetchall()
        return [self._row_to_source(row) for row in rows]

    @staticmethod
    def _row_to_source(row: tuple) -> MonitoredSource:
        source_id, source_type, display_name, connection_config, is_enabled = row
        return MonitoredSource(
            source_id=source_id,
            source_type=SourceType(source_type),
            display_name=display_name,
            connection_config=json.loads(connection_config or "{}"),
            is_enabled=bool(is_enabled),
        )
