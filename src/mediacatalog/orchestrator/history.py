"""Bounded in-memory job history and activity logs."""

from __future__ import annotations

from collections import deque
from typing import Callable, Deque, Iterable, List

from .models import ActivityLogEntry, Job


class JobHistory:
    """Completed jobs plus the two activity logs shown to the user.

    Completed jobs live in a ring buffer, newest first. When a job falls off
    the end, every task-log entry referencing it is removed in the same call
    so the log never points at a job that is no longer listed. The durable
    copies in the persistent store are left alone.
    """

    def __init__(self, *, max_completed: int = 50, max_entries: int = 100) -> None:
        self._max_completed = max_completed
        self._max_entries = max_entries
        self._completed: Deque[Job] = deque()
        self._task_log: Deque[ActivityLogEntry] = deque()
        self._monitoring_log: Deque[ActivityLogEntry] = deque()

    @property
    def completed(self) -> List[Job]:
        return list(self._completed)

    @property
    def task_log(self) -> List[ActivityLogEntry]:
        return list(self._task_log)

    @property
    def monitoring_log(self) -> List[ActivityLogEntry]:
        return list(self._monitoring_log)

    def record_completion(self, job: Job, entry: ActivityLogEntry) -> List[str]:
        """Add a finished job and its log entry.

        Returns:
            Ids of jobs evicted from the completed buffer
        """
        self._completed.appendleft(job)
        evicted: List[str] = []
        while len(self._completed) > self._max_completed:
            evicted.append(self._completed.pop().id)

        self._push(self._task_log, entry)
        if evicted:
            dropped = set(evicted)
            self._task_log = deque(e for e in self._task_log if e.task_id not in dropped)
        return evicted

    def add_monitoring_entry(self, entry: ActivityLogEntry) -> None:
        self._push(self._monitoring_log, entry)

    def clear_task_history(self) -> None:
        self._completed.clear()
        self._task_log.clear()

    def clear_monitoring_history(self) -> None:
        self._monitoring_log.clear()

    def remove_jobs(self, predicate: Callable[[Job], bool]) -> List[str]:
        """Drop matching completed jobs and their task log entries.

        Returns:
            Ids of the removed jobs
        """
        removed = [job.id for job in self._completed if predicate(job)]
        if removed:
            dropped = set(removed)
            self._completed = deque(job for job in self._completed if job.id not in dropped)
            self._task_log = deque(e for e in self._task_log if e.task_id not in dropped)
        return removed

    def load(
        self,
        completed: Iterable[Job],
        task_entries: Iterable[ActivityLogEntry],
        monitoring_entries: Iterable[ActivityLogEntry],
    ) -> None:
        """Replace the in-memory state with entries read back from storage."""
        self._completed = deque(list(completed)[: self._max_completed])
        self._task_log = deque(list(task_entries)[: self._max_entries])
        self._monitoring_log = deque(list(monitoring_entries)[: self._max_entries])

    def _push(self, log: Deque[ActivityLogEntry], entry: ActivityLogEntry) -> None:
        log.appendleft(entry)
        while len(log) > self._max_entries:
            log.pop()
