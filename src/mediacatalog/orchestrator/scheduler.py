"""Single-flight background task scheduler."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Set

from .cancellation import CancellationToken
from .config import SchedulerConfig
from .exceptions import (
    CollaboratorError,
    JobDefinitionError,
    MediaCatalogError,
    TaskCancelledError,
)
from .history import JobHistory
from .models import (
    ActivityKind,
    ActivityLogEntry,
    Job,
    JobDefinition,
    JobKind,
    JobProgress,
    JobResult,
    JobStatus,
    QueueState,
    utcnow,
)
from .ports import (
    ChangeSink,
    CompletenessAnalyzer,
    MonitorControl,
    PersistentStore,
    ProgressCallback,
    ScanCoordinator,
    ScanOptions,
    SourceCatalog,
    WishlistCompleter,
)
from .progress import ProgressChannel
from .sinks import SafeChangeSink

logger = logging.getLogger(__name__)

ANALYSIS_NAMES = {
    JobKind.SERIES_COMPLETENESS: "Series",
    JobKind.COLLECTION_COMPLETENESS: "Collection",
    JobKind.MUSIC_COMPLETENESS: "Music",
}


def format_completion_message(job: Job) -> str:
    """Human-readable history line for a finished job."""
    if job.status is JobStatus.FAILED:
        return f"Failed: {job.label} - {job.error or 'Unknown error'}"
    if job.status is JobStatus.CANCELLED:
        return f"Cancelled: {job.label}"
    if job.status is JobStatus.INTERRUPTED:
        if job.started_at is None:
            return f"Interrupted (app quit, was queued): {job.label}"
        return f"Interrupted (app quit): {job.label}"

    result = job.result
    parts: List[str] = []
    if result is not None:
        for count, noun in (
            (result.items_scanned, "scanned"),
            (result.items_added, "added"),
            (result.items_updated, "updated"),
            (result.items_removed, "removed"),
        ):
            if count:
                parts.append(f"{count} {noun}")
    if not parts:
        return f"Completed: {job.label}"
    return f"Completed: {job.label} ({', '.join(parts)})"


class BackgroundTaskScheduler:
    """Runs queued maintenance jobs strictly one at a time.

    Jobs execute in queue order. The scheduler pauses the change monitor
    before the first job of a busy period and resumes it once the queue has
    drained, but only if it was the one that paused it.
    """

    def __init__(
        self,
        *,
        scan_coordinator: ScanCoordinator,
        store: PersistentStore,
        catalog: SourceCatalog,
        series_analyzer: Optional[CompletenessAnalyzer] = None,
        collection_analyzer: Optional[CompletenessAnalyzer] = None,
        music_analyzer: Optional[CompletenessAnalyzer] = None,
        wishlist: Optional[WishlistCompleter] = None,
        sink: Optional[ChangeSink] = None,
        monitor: Optional[MonitorControl] = None,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._config = config or SchedulerConfig()
        self._scanner = scan_coordinator
        self._store = store
        self._catalog = catalog
        self._analyzers: Dict[JobKind, CompletenessAnalyzer] = {}
        for kind, analyzer in (
            (JobKind.SERIES_COMPLETENESS, series_analyzer),
            (JobKind.COLLECTION_COMPLETENESS, collection_analyzer),
            (JobKind.MUSIC_COMPLETENESS, music_analyzer),
        ):
            if analyzer is not None:
                self._analyzers[kind] = analyzer
        self._wishlist = wishlist
        self._sink = SafeChangeSink(sink)
        self._monitor = monitor

        self._queue: List[Job] = []
        self._current: Optional[Job] = None
        self._cancel_token: Optional[CancellationToken] = None
        self._history = JobHistory(
            max_completed=self._config.max_completed_tasks,
            max_entries=self._config.max_history_entries,
        )
        self._is_paused = False
        self._is_processing = False
        self._paused_monitor = False
        self._shutting_down = False
        self._drain_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(self, definition: JobDefinition) -> str:
        """Append a job to the queue and start processing if idle.

        Args:
            definition: What to run and against which source or library

        Returns:
            Id of the queued job

        Raises:
            MediaCatalogError: If the scheduler is shutting down
        """
        if self._shutting_down:
            raise MediaCatalogError("Scheduler is shutting down")
        job = Job.from_definition(definition)
        self._queue.append(job)
        logger.info(
            "Job queued",
            extra={
                "job_id": job.id,
                "job_kind": job.kind.value,
                "queue_depth": len(self._queue),
            },
        )
        self._emit_queue_update()
        self._kick()
        return job.id

    def remove(self, job_id: str) -> bool:
        """Remove a queued job. The running job cannot be removed.

        Returns:
            True if the job was found in the queue
        """
        for index, job in enumerate(self._queue):
            if job.id == job_id:
                del self._queue[index]
                self._emit_queue_update()
                return True
        return False

    def reorder(self, job_ids: Sequence[str]) -> None:
        """Replace the queue order.

        The new order is applied only when ``job_ids`` names exactly the queued
        jobs; any other request is ignored.
        """
        by_id = {job.id: job for job in self._queue}
        if len(job_ids) != len(self._queue) or set(job_ids) != set(by_id):
            logger.debug(
                "Ignoring reorder that does not match the queue",
                extra={"requested": len(job_ids), "queued": len(self._queue)},
            )
            return
        self._queue = [by_id[job_id] for job_id in job_ids]
        self._emit_queue_update()

    def clear_queue(self) -> None:
        """Drop every queued job, leaving the running one alone."""
        self._queue.clear()
        if self._current is None:
            self._resume_monitor_if_paused()
        self._emit_queue_update()

    def pause(self) -> None:
        """Stop starting new jobs. A running job is allowed to finish."""
        self._is_paused = True
        logger.info("Task queue paused")
        self._emit_queue_update()

    def resume(self) -> None:
        """Allow queued jobs to start again."""
        self._is_paused = False
        logger.info("Task queue resumed")
        self._emit_queue_update()
        self._kick()

    def cancel_current(self) -> bool:
        """Request cooperative cancellation of the running job.

        Returns:
            True if a job was running
        """
        job = self._current
        if job is None or self._cancel_token is None:
            return False
        logger.info("Cancelling job", extra={"job_id": job.id, "job_kind": job.kind.value})
        self._cancel_token.cancel()
        try:
            if job.kind.is_scan:
                self._scanner.stop_scan()
            else:
                analyzer = self._analyzers.get(job.kind)
                if analyzer is not None:
                    analyzer.cancel()
        except Exception:  # noqa: BLE001
            logger.exception("Collaborator cancel failed", extra={"job_id": job.id})
        return True

    def remove_tasks_for_source(self, source_id: str) -> None:
        """Forget all work belonging to a deleted source.

        The running job is cancelled if it targets the source, and its queued
        and completed jobs are dropped along with their task log entries.
        """
        if self._current is not None and self._current.source_id == source_id:
            self.cancel_current()
        self._queue = [job for job in self._queue if job.source_id != source_id]
        self._history.remove_jobs(lambda job: job.source_id == source_id)
        logger.info("Removed tasks for source", extra={"source_id": source_id})
        self._emit_queue_update()

    def get_state(self) -> QueueState:
        """Snapshot of the running job, the queue and recent completions."""
        return QueueState(
            current_task=self._current.snapshot() if self._current else None,
            queue=[job.snapshot() for job in self._queue],
            is_paused=self._is_paused,
            completed_tasks=[job.snapshot() for job in self._history.completed],
        )

    async def join(self) -> None:
        """Wait until the current busy period has drained."""
        await self._idle.wait()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_task_history(self) -> List[ActivityLogEntry]:
        return self._history.task_log

    def get_monitoring_history(self) -> List[ActivityLogEntry]:
        return self._history.monitoring_log

    def add_monitoring_event(self, message: str) -> None:
        """Record a change-monitor message in the monitoring log."""
        entry = ActivityLogEntry.create(ActivityKind.MONITORING, message)
        self._history.add_monitoring_entry(entry)
        try:
            self._store.append_activity(entry)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist monitoring event")
        self._emit_history_update()

    def clear_task_history(self) -> None:
        self._history.clear_task_history()
        try:
            self._store.clear_task_history()
            self._store.clear_activity("task")
        except Exception:  # noqa: BLE001
            logger.exception("Failed to clear persisted task history")
        self._emit_history_update()
        self._emit_queue_update()

    def clear_monitoring_history(self) -> None:
        self._history.clear_monitoring_history()
        try:
            self._store.clear_activity("monitoring")
        except Exception:  # noqa: BLE001
            logger.exception("Failed to clear persisted monitoring history")
        self._emit_history_update()

    def load_persisted_history(self) -> None:
        """Restore completed jobs and both activity logs from the store."""
        try:
            completed = self._store.list_task_history(self._config.max_completed_tasks)
            task_entries = self._store.list_activity("task", self._config.max_history_entries)
            monitoring_entries = self._store.list_activity(
                "monitoring", self._config.max_history_entries
            )
        except Exception:  # noqa: BLE001
            logger.exception("Failed to load persisted task history")
            return
        self._history.load(completed, task_entries, monitoring_entries)
        logger.info(
            "Loaded persisted task history",
            extra={
                "completed_tasks": len(completed),
                "task_entries": len(task_entries),
                "monitoring_entries": len(monitoring_entries),
            },
        )

    def persist_interrupted_tasks(self) -> List[Job]:
        """Record every outstanding job as interrupted.

        Called once at shutdown. The running job and all queued jobs are
        stored with status ``interrupted`` and a completion timestamp; none
        of the queued jobs is started afterwards.

        Returns:
            The jobs that were marked interrupted
        """
        self._shutting_down = True
        outstanding: List[Job] = []
        if self._current is not None:
            outstanding.append(self._current)
        outstanding.extend(self._queue)
        self._queue = []

        for job in outstanding:
            job.finish(JobStatus.INTERRUPTED)
            entry = ActivityLogEntry.create(
                ActivityKind.TASK_INTERRUPTED,
                format_completion_message(job),
                task_id=job.id,
                task_kind=job.kind,
            )
            try:
                self._store.save_task_history(job)
                self._store.append_activity(entry)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to persist interrupted task", extra={"job_id": job.id})
        if outstanding:
            logger.info("Persisted interrupted tasks", extra={"count": len(outstanding)})
        return outstanding

    async def shutdown(self) -> None:
        """Persist outstanding jobs as interrupted and stop all scheduler tasks."""
        self.persist_interrupted_tasks()
        if self._cancel_token is not None:
            self._cancel_token.cancel()
        tasks = [task for task in (self._drain_task, *self._background) if task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._drain_task = None
        self._background.clear()
        self._is_processing = False
        self._idle.set()
        logger.info("Background task scheduler stopped")

    # ------------------------------------------------------------------
    # Execution loop
    # ------------------------------------------------------------------

    def _kick(self) -> None:
        if self._is_processing or self._shutting_down:
            return
        if not self._queue:
            self._resume_monitor_if_paused()
            return
        if self._is_paused:
            return
        self._is_processing = True
        self._idle.clear()
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        """Run queued jobs one after another until the queue empties or pauses."""
        try:
            while self._queue and not self._is_paused and not self._shutting_down:
                self._pause_monitor_once()
                job = self._queue.pop(0)
                await self._run_job(job)
        finally:
            self._is_processing = False
            self._drain_task = None
            if not self._queue and not self._shutting_down:
                self._resume_monitor_if_paused()
            self._idle.set()

    async def _run_job(self, job: Job) -> None:
        """Execute one job and record its outcome.

        Exceptions raised by collaborators mark the job failed; a cancelled
        token marks it cancelled. Neither stops the drain loop.
        """
        token = CancellationToken()
        channel: ProgressChannel[Job] = ProgressChannel(
            self._sink.task_progress,
            interval=self._config.progress_interval_seconds,
        )
        job.status = JobStatus.RUNNING
        job.started_at = utcnow()
        self._current = job
        self._cancel_token = token
        self._emit_queue_update()
        logger.info(
            "Job started",
            extra={"job_id": job.id, "job_kind": job.kind.value, "source_id": job.source_id},
        )

        def on_progress(progress: JobProgress) -> None:
            if token.cancelled:
                raise TaskCancelledError()
            job.progress = progress.with_percentage()
            channel.send(job.snapshot())

        try:
            result = await self._execute(job, token, on_progress)
        except Exception as exc:  # noqa: BLE001
            if job.status is JobStatus.RUNNING:
                if token.cancelled or isinstance(exc, TaskCancelledError):
                    job.finish(JobStatus.CANCELLED)
                else:
                    job.finish(JobStatus.FAILED, error=str(exc) or exc.__class__.__name__)
                    logger.exception(
                        "Job failed",
                        extra={"job_id": job.id, "job_kind": job.kind.value},
                    )
        else:
            if job.status is JobStatus.RUNNING:
                job.result = result
                job.finish(JobStatus.CANCELLED if token.cancelled else JobStatus.COMPLETED)
        finally:
            await channel.aclose()
            self._current = None
            self._cancel_token = None

        if job.status is JobStatus.INTERRUPTED:
            # Already recorded by persist_interrupted_tasks
            return
        self._finalize(job)

    async def _execute(
        self,
        job: Job,
        token: CancellationToken,
        on_progress: ProgressCallback,
    ) -> JobResult:
        if job.kind in (JobKind.LIBRARY_SCAN, JobKind.MUSIC_SCAN):
            if not job.source_id or not job.library_id:
                raise JobDefinitionError("Library scan requires source_id and library_id")
            return await self._scan_library(job.source_id, job.library_id, token, on_progress)
        if job.kind is JobKind.SOURCE_SCAN:
            if not job.source_id:
                raise JobDefinitionError("Source scan requires source_id")
            return await self._scan_source(job.source_id, token, on_progress)
        return await self._run_analysis(job, token, on_progress)

    async def _scan_library(
        self,
        source_id: str,
        library_id: str,
        token: CancellationToken,
        on_progress: ProgressCallback,
    ) -> JobResult:
        is_first_scan = self._store.get_last_scan_time(source_id, library_id) is None
        scan = await self._scanner.scan_library(
            source_id,
            library_id,
            ScanOptions(on_progress=on_progress, cancel_token=token),
        )
        token.raise_if_cancelled()
        if not scan.success:
            raise CollaboratorError(", ".join(scan.errors) or "Scan failed")
        return JobResult(
            items_scanned=scan.items_scanned,
            items_added=scan.items_added,
            items_updated=scan.items_updated,
            items_removed=scan.items_removed,
            is_first_scan=is_first_scan,
        )

    async def _scan_source(
        self,
        source_id: str,
        token: CancellationToken,
        on_progress: ProgressCallback,
    ) -> JobResult:
        """Scan every enabled library of a source and sum the counts.

        A failing library does not stop the remaining ones; the collected
        errors fail the job once all libraries have been tried.
        """
        libraries = [lib for lib in self._catalog.list_libraries(source_id) if lib.is_enabled]
        totals = JobResult()
        errors: List[str] = []
        count = len(libraries)

        for index, library in enumerate(libraries):
            token.raise_if_cancelled()

            def library_progress(progress: JobProgress, index: int = index, name: str = library.library_name) -> None:
                fraction = progress.with_percentage().percentage or 0.0
                on_progress(
                    JobProgress(
                        current=index,
                        total=count,
                        phase=f"Scanning {name}",
                        current_item=progress.current_item,
                        percentage=round(((index + fraction / 100) / count) * 100, 1),
                    )
                )

            try:
                result = await self._scan_library(source_id, library.library_id, token, library_progress)
            except TaskCancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Library scan failed, continuing with source",
                    extra={"source_id": source_id, "library_id": library.library_id, "error": str(exc)},
                )
                errors.append(f"{library.library_name}: {str(exc) or exc.__class__.__name__}")
                continue
            totals.items_scanned += result.items_scanned
            totals.items_added += result.items_added
            totals.items_updated += result.items_updated
            totals.items_removed += result.items_removed
            totals.is_first_scan = totals.is_first_scan or result.is_first_scan

        if errors:
            raise CollaboratorError("; ".join(errors))
        return totals

    async def _run_analysis(
        self,
        job: Job,
        token: CancellationToken,
        on_progress: ProgressCallback,
    ) -> JobResult:
        analyzer = self._analyzers.get(job.kind)
        if analyzer is None:
            raise JobDefinitionError(f"No analyzer configured for {job.kind.value}")
        outcome = await analyzer.analyze_all(on_progress, job.source_id, job.library_id)
        if not outcome.completed and not token.cancelled:
            raise CollaboratorError(f"{ANALYSIS_NAMES[job.kind]} analysis did not complete")
        self._sink.library_updated(job.kind.value)
        return JobResult(items_scanned=outcome.analyzed)

    def _finalize(self, job: Job) -> None:
        entry = ActivityLogEntry.create(
            ActivityKind.for_status(job.status),
            format_completion_message(job),
            task_id=job.id,
            task_kind=job.kind,
        )
        try:
            self._store.save_task_history(job)
            self._store.append_activity(entry)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist task history", extra={"job_id": job.id})

        evicted = self._history.record_completion(job, entry)
        if evicted:
            logger.debug("Evicted completed jobs", extra={"job_ids": evicted})

        logger.info(
            "Job finished",
            extra={"job_id": job.id, "job_kind": job.kind.value, "status": job.status.value},
        )
        self._sink.task_completed(job.snapshot())
        if job.status is JobStatus.COMPLETED and job.kind.is_scan:
            self._sink.scan_completed(job.snapshot())
            if job.result is not None and job.result.has_changes:
                self._spawn(self._check_wishlist())
        self._emit_history_update()
        self._emit_queue_update()

    async def _check_wishlist(self) -> None:
        if self._wishlist is None:
            return
        try:
            completed = await self._wishlist.check_and_complete()
        except Exception:  # noqa: BLE001
            logger.exception("Wishlist completion check failed")
            return
        if completed:
            logger.info("Wishlist items completed", extra={"count": completed})

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Monitor handshake
    # ------------------------------------------------------------------

    def _pause_monitor_once(self) -> None:
        if self._monitor is None or self._paused_monitor:
            return
        try:
            if self._monitor.is_active_and_enabled():
                self._monitor.pause()
                self._paused_monitor = True
                logger.info("Paused library monitoring for task queue")
        except Exception:  # noqa: BLE001
            logger.exception("Failed to pause library monitoring")

    def _resume_monitor_if_paused(self) -> None:
        if self._monitor is None or not self._paused_monitor:
            return
        self._paused_monitor = False
        try:
            self._monitor.resume()
            logger.info("Resumed library monitoring after task queue drained")
        except Exception:  # noqa: BLE001
            logger.exception("Failed to resume library monitoring")

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _emit_queue_update(self) -> None:
        self._sink.queue_updated(self.get_state())

    def _emit_history_update(self) -> None:
        self._sink.history_updated(self._history.task_log, self._history.monitoring_log)
