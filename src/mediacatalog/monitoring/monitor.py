"""Live library change monitoring.

Each enabled source is observed either by a filesystem watcher (local folders
and attached databases) or by periodic incremental scans (media servers).
Filesystem changes are debounced per source and scanned as a targeted batch;
polled sources are checked on a self-rescheduling timer with a hard timeout.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from ..orchestrator.config import MonitorTimings
from ..orchestrator.exceptions import SourceNotFoundError
from ..orchestrator.models import utcnow
from ..orchestrator.ports import (
    ChangeSink,
    PersistentStore,
    ScanCoordinator,
    ScanOptions,
    ScanResult,
    SourceCatalog,
    WishlistCompleter,
)
from ..orchestrator.sinks import SafeChangeSink
from .models import (
    ChangeEvent,
    ChangeType,
    LibraryInfo,
    MonitoredSource,
    MonitoringConfig,
    MonitorStatus,
    SourceType,
    classify_change,
    is_media_path,
    preview,
)
from .settings import MonitoringSettingsStore
from .watch import (
    ChangeCallback,
    ErrorCallback,
    FileChange,
    FileWatch,
    FileWatcher,
    PollWatch,
    WatchStrategy,
    database_file_filter,
)

logger = logging.getLogger(__name__)

WatcherFactory = Callable[[MonitoredSource, ChangeCallback, ErrorCallback], FileWatcher]
ActivityRecorder = Callable[[str], None]


class LibraryChangeMonitor:
    """Detects library changes and turns them into change events.

    The monitor owns one watch strategy per source. ``pause`` and ``resume``
    are used by the task scheduler while it runs jobs: pausing drops timers
    and pending changes but keeps filesystem watchers open, and ``resume``
    only has an effect when the monitor was paused rather than stopped.
    """

    def __init__(
        self,
        *,
        scan_coordinator: ScanCoordinator,
        catalog: SourceCatalog,
        store: PersistentStore,
        settings: Optional[MonitoringSettingsStore] = None,
        wishlist: Optional[WishlistCompleter] = None,
        sink: Optional[ChangeSink] = None,
        timings: Optional[MonitorTimings] = None,
        watcher_factory: Optional[WatcherFactory] = None,
        record_activity: Optional[ActivityRecorder] = None,
    ) -> None:
        self._scanner = scan_coordinator
        self._catalog = catalog
        self._store = store
        self._settings = settings or MonitoringSettingsStore(store)
        self._wishlist = wishlist
        self._sink = SafeChangeSink(sink)
        self._timings = timings or MonitorTimings()
        self._watcher_factory = watcher_factory or self._create_watcher
        self._record_activity = record_activity

        self._config = MonitoringConfig()
        self._strategies: Dict[str, WatchStrategy] = {}
        self._sources: Dict[str, MonitoredSource] = {}
        self._last_check: Dict[str, datetime] = {}
        self._cycles: Dict[asyncio.Task, str] = {}
        self._background: Set[asyncio.Task] = set()
        self._startup: Optional[asyncio.TimerHandle] = None
        self._is_active = False
        self._paused_by_scheduler = False

    def set_activity_recorder(self, recorder: ActivityRecorder) -> None:
        self._record_activity = recorder

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load persisted settings and schedule auto-start."""
        self._config = self._settings.load()
        logger.info(
            "Monitoring configuration loaded",
            extra={
                "enabled": self._config.enabled,
                "start_on_launch": self._config.start_on_launch,
            },
        )
        if self._config.enabled and self._config.start_on_launch:
            loop = asyncio.get_running_loop()
            self._startup = loop.call_later(
                self._timings.startup_delay_seconds,
                lambda: self._spawn_background(self.start()),
            )

    async def start(self) -> None:
        """Attach a watch strategy to every enabled source.

        Does nothing when monitoring is disabled or already active.
        """
        if self._is_active:
            return
        if not self._config.enabled:
            logger.info("Monitoring is disabled")
            return
        self._cancel_startup()
        self._paused_by_scheduler = False
        self._activate()

    async def stop(self) -> None:
        """Tear down every watcher and timer.

        Cleanup always runs to completion; individual failures are logged.
        """
        self._cancel_startup()
        if not self._is_active and not self._paused_by_scheduler and not self._strategies:
            return
        logger.info("Stopping library monitoring")
        self._is_active = False
        self._paused_by_scheduler = False
        self._cancel_cycles()
        for source_id in list(self._strategies):
            await self._detach(source_id)
        self._sources.clear()
        self._last_check.clear()
        for task in list(self._background):
            task.cancel()
        self._emit_status()

    def pause(self) -> None:
        """Suspend detection while the task scheduler runs jobs.

        Timers, in-flight cycles and pending changes are dropped; filesystem
        watchers stay open.
        """
        if not self._is_active:
            return
        logger.info("Pausing library monitoring for task queue")
        self._sink.monitor_event("Monitoring paused for scan")
        self._clear_timers()
        self._cancel_cycles()
        self._paused_by_scheduler = True
        self._is_active = False
        self._emit_status()

    def resume(self) -> None:
        """Restart detection after :meth:`pause`.

        Has no effect unless the monitor was paused by the scheduler. Poll
        intervals are re-read from the current configuration.
        """
        if not self._paused_by_scheduler:
            return
        logger.info("Resuming library monitoring after task queue")
        self._sink.monitor_event("Monitoring resumed after scan")
        self._clear_pending()
        self._paused_by_scheduler = False
        if not self._config.enabled:
            return
        self._activate()

    def is_active_and_enabled(self) -> bool:
        """Whether the scheduler should pause the monitor before running jobs."""
        return self._is_active and self._config.enabled

    def is_monitoring_active(self) -> bool:
        return self._is_active

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def add_source(self, source: MonitoredSource) -> None:
        """Start watching a newly added or edited source.

        Any previous strategy for the same source is torn down first. Ignored
        while monitoring is inactive.

        Args:
            source: Source to observe
        """
        if not self._is_active:
            return
        await self._detach(source.source_id)
        self._attach(source)
        self._emit_status()

    async def remove_source(self, source_id: str) -> None:
        """Stop observing a source. Safe to call for unknown sources.

        Args:
            source_id: Id of the source to forget
        """
        for task, owner in list(self._cycles.items()):
            if owner == source_id:
                task.cancel()
        await self._detach(source_id)
        self._sources.pop(source_id, None)
        self._last_check.pop(source_id, None)
        self._emit_status()

    async def force_check(self, source_id: str) -> List[ChangeEvent]:
        """Run one check cycle for ``source_id`` now.

        Returns:
            Change events found, empty while a manual scan is running

        Raises:
            SourceNotFoundError: If the source is unknown
        """
        if self._should_pause():
            logger.info("Manual scan in progress, skipping forced check", extra={"source_id": source_id})
            return []
        source = self._sources.get(source_id) or self._catalog.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(f"Unknown source {source_id}")
        return await self._check_source(source)

    # ------------------------------------------------------------------
    # Status and configuration
    # ------------------------------------------------------------------

    def get_status(self) -> MonitorStatus:
        """Snapshot of activity, pause state and per-source strategy."""
        return MonitorStatus(
            is_active=self._is_active,
            is_paused=self._paused_by_scheduler,
            last_check=dict(self._last_check),
            watched_sources=sorted(
                sid for sid, strategy in self._strategies.items() if isinstance(strategy, FileWatch)
            ),
            polled_sources=sorted(
                sid for sid, strategy in self._strategies.items() if isinstance(strategy, PollWatch)
            ),
        )

    def get_config(self) -> MonitoringConfig:
        return self._config.model_copy(deep=True)

    async def set_config(self, changes: Mapping[str, Any]) -> MonitoringConfig:
        """Apply and persist a partial configuration update.

        Raises:
            ConfigurationError: If the update is invalid
        """
        previous = self._config
        self._config = self._settings.apply(previous, changes)

        if previous.enabled and not self._config.enabled:
            await self.stop()
        elif not previous.enabled and self._config.enabled:
            await self.start()
        elif "polling_intervals" in changes and self._is_active:
            self._restart_polling()
        return self.get_config()

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    def _activate(self) -> None:
        """Mark the monitor active and arm a strategy for every enabled source."""
        self._is_active = True
        logger.info("Starting library monitoring")
        for source in self._catalog.list_enabled_sources():
            self._sources[source.source_id] = source
            if source.source_id not in self._strategies:
                self._attach(source)
        for source_id, strategy in self._strategies.items():
            if not isinstance(strategy, PollWatch):
                continue
            self._refresh_interval(source_id, strategy)
            if strategy.timer is None:
                self._schedule_poll(source_id, self._timings.first_poll_delay_seconds)
        self._emit_status()

    def _attach(self, source: MonitoredSource) -> None:
        """Pick a watch strategy for ``source``.

        Watchable sources with a path get a file watcher; everything else, and
        any source whose watcher fails to start, is polled.
        """
        source_id = source.source_id
        self._sources[source_id] = source

        if source.source_type.is_watchable and source.watch_path:
            watcher = self._watcher_factory(
                source,
                lambda change, sid=source_id: self._on_file_change(sid, change),
                lambda exc, sid=source_id: self._on_watch_error(sid, exc),
            )
            try:
                watcher.start()
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "File watcher failed to start, polling instead",
                    extra={"source_id": source_id, "error": str(exc)},
                )
                self._sink.monitor_event(f"[{source.display_name}] Watcher failed: {exc}")
            else:
                self._strategies[source_id] = FileWatch(watcher=watcher)
                self._sink.monitor_event(
                    f"Starting file watcher: {source.display_name} "
                    f"({'polling' if watcher.use_polling else 'native'})"
                )
                return

        self._start_polling(source)

    def _start_polling(self, source: MonitoredSource) -> None:
        interval = float(self._config.effective_interval(source.source_type))
        self._strategies[source.source_id] = PollWatch(interval=interval)
        logger.info(
            "Polling source",
            extra={"source_id": source.source_id, "interval_seconds": interval},
        )
        if self._is_active:
            self._schedule_poll(source.source_id, self._timings.first_poll_delay_seconds)

    async def _detach(self, source_id: str) -> None:
        strategy = self._strategies.pop(source_id, None)
        if strategy is None:
            return
        if isinstance(strategy, PollWatch):
            strategy.cancel_timer()
            return
        strategy.cancel_debounce()
        strategy.pending.clear()
        try:
            await strategy.watcher.close()
        except Exception:  # noqa: BLE001
            logger.warning("Error closing watcher", extra={"source_id": source_id}, exc_info=True)

    def _create_watcher(
        self,
        source: MonitoredSource,
        on_change: ChangeCallback,
        on_error: ErrorCallback,
    ) -> FileWatcher:
        path = source.watch_path or ""
        if source.source_type is SourceType.KODI_LOCAL:
            return FileWatcher(
                str(Path(path)),
                on_change=on_change,
                on_error=on_error,
                timings=self._timings,
                accept=database_file_filter(path),
                recursive=False,
            )
        return FileWatcher(
            path,
            on_change=on_change,
            on_error=on_error,
            timings=self._timings,
            accept=is_media_path,
        )

    def _on_watch_error(self, source_id: str, exc: Exception) -> None:
        source = self._sources.get(source_id)
        name = source.display_name if source else source_id
        logger.warning("Watcher error, falling back to polling", extra={"source_id": source_id, "error": str(exc)})
        self._sink.monitor_event(f"[{name}] Watcher error: {exc}")
        self._spawn_background(self._fall_back_to_polling(source_id))

    async def _fall_back_to_polling(self, source_id: str) -> None:
        strategy = self._strategies.get(source_id)
        if not isinstance(strategy, FileWatch):
            return
        await self._detach(source_id)
        source = self._sources.get(source_id)
        if source is None or source_id in self._strategies:
            return
        if self._is_active or self._paused_by_scheduler:
            self._start_polling(source)
            self._emit_status()

    # ------------------------------------------------------------------
    # Filesystem changes
    # ------------------------------------------------------------------

    def _on_file_change(self, source_id: str, change: FileChange) -> None:
        """Collect a changed path and restart the source's debounce timer."""
        if not self._is_active or self._should_pause():
            return
        strategy = self._strategies.get(source_id)
        if not isinstance(strategy, FileWatch):
            return
        strategy.pending.add(change.path)
        strategy.cancel_debounce()
        strategy.debounce = asyncio.get_running_loop().call_later(
            self._timings.debounce_seconds,
            self._on_debounce,
            source_id,
        )
        source = self._sources.get(source_id)
        name = source.display_name if source else source_id
        self._sink.monitor_event(f"[{name}] {change.kind.value}: {Path(change.path).name}")

    def _on_debounce(self, source_id: str) -> None:
        strategy = self._strategies.get(source_id)
        if not isinstance(strategy, FileWatch):
            return
        strategy.debounce = None
        self._spawn_cycle(source_id, self._process_file_changes(source_id))

    async def _process_file_changes(self, source_id: str) -> List[ChangeEvent]:
        """Scan the paths gathered during the last quiet period.

        Returns:
            Change events produced by the targeted scan
        """
        strategy = self._strategies.get(source_id)
        source = self._sources.get(source_id)
        if not isinstance(strategy, FileWatch) or source is None:
            return []
        paths = sorted(strategy.pending)
        strategy.pending = set()
        if not paths:
            return []

        if self._should_pause():
            logger.info(
                "Manual scan in progress, discarding file changes",
                extra={"source_id": source_id, "change_count": len(paths)},
            )
            return []
        if len(paths) > self._timings.max_changes_per_batch:
            logger.warning(
                "Too many file changes at once, likely scan interference",
                extra={"source_id": source_id, "change_count": len(paths)},
            )
            self._sink.monitor_event(
                f"[{source.display_name}] Skipped {len(paths)} changes (likely scan interference)"
            )
            return []

        if source.source_type is SourceType.KODI_LOCAL:
            return await self._check_source(source)
        return await self._scan_targeted(source, paths)

    async def _scan_targeted(self, source: MonitoredSource, paths: Sequence[str]) -> List[ChangeEvent]:
        logger.info(
            "Scanning changed files",
            extra={"source_id": source.source_id, "change_count": len(paths)},
        )
        results = []
        for library in self._enabled_libraries(source.source_id):
            result = await self._scan_one(
                source,
                library,
                ScanOptions(target_files=list(paths), background=True),
            )
            if result is not None:
                results.append((library, result))
        return self._complete_cycle(source, results)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _schedule_poll(self, source_id: str, delay: float) -> None:
        strategy = self._strategies.get(source_id)
        if not isinstance(strategy, PollWatch):
            return
        strategy.cancel_timer()
        strategy.timer = asyncio.get_running_loop().call_later(delay, self._on_poll_timer, source_id)

    def _on_poll_timer(self, source_id: str) -> None:
        strategy = self._strategies.get(source_id)
        if isinstance(strategy, PollWatch):
            strategy.timer = None
        self._spawn_cycle(source_id, self._poll_source(source_id))

    async def _poll_source(self, source_id: str) -> None:
        """Run one timed check for a polled source and schedule the next one."""
        strategy = self._strategies.get(source_id)
        source = self._sources.get(source_id)
        if not isinstance(strategy, PollWatch) or source is None:
            return
        if self._should_pause():
            logger.info("Manual scan in progress, skipping poll", extra={"source_id": source_id})
            self._schedule_poll(source_id, strategy.interval)
            return
        if not self._is_active:
            return

        strategy.last_check = utcnow()
        try:
            await asyncio.wait_for(
                self._check_source(source),
                timeout=self._timings.poll_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Polling check timed out",
                extra={"source_id": source_id, "timeout_seconds": self._timings.poll_timeout_seconds},
            )
            self._sink.monitor_event(f"[{source.display_name}] Check timed out")
        except Exception:  # noqa: BLE001
            logger.exception("Polling check failed", extra={"source_id": source_id})
        finally:
            if self._is_active and self._strategies.get(source_id) is strategy:
                self._schedule_poll(source_id, strategy.interval)

    def _restart_polling(self) -> None:
        for source_id, strategy in self._strategies.items():
            if not isinstance(strategy, PollWatch):
                continue
            self._refresh_interval(source_id, strategy)
            self._schedule_poll(source_id, strategy.interval)

    def _refresh_interval(self, source_id: str, strategy: PollWatch) -> None:
        source = self._sources.get(source_id)
        if source is not None:
            strategy.interval = float(self._config.effective_interval(source.source_type))

    async def _check_source(self, source: MonitoredSource) -> List[ChangeEvent]:
        """Incrementally scan each enabled library since its last scan.

        Returns:
            Change events, one per library with changes
        """
        results = []
        for library in self._enabled_libraries(source.source_id):
            since = self._store.get_last_scan_time(source.source_id, library.library_id)
            result = await self._scan_one(
                source,
                library,
                ScanOptions(since_timestamp=since, background=True),
            )
            if result is not None:
                results.append((library, result))
        return self._complete_cycle(source, results)

    # ------------------------------------------------------------------
    # Shared cycle plumbing
    # ------------------------------------------------------------------

    def _enabled_libraries(self, source_id: str) -> List[LibraryInfo]:
        try:
            return [lib for lib in self._catalog.list_libraries(source_id) if lib.is_enabled]
        except Exception:  # noqa: BLE001
            logger.exception("Failed to list libraries", extra={"source_id": source_id})
            return []

    async def _scan_one(
        self,
        source: MonitoredSource,
        library: LibraryInfo,
        options: ScanOptions,
    ) -> Optional[ScanResult]:
        try:
            result = await self._scanner.scan_library(source.source_id, library.library_id, options)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Library check failed",
                extra={"source_id": source.source_id, "library_id": library.library_id, "error": str(exc)},
            )
            return None
        if not result.success:
            logger.warning(
                "Library check reported errors",
                extra={
                    "source_id": source.source_id,
                    "library_id": library.library_id,
                    "errors": result.errors,
                },
            )
        return result

    def _complete_cycle(
        self,
        source: MonitoredSource,
        results: Sequence[Tuple[LibraryInfo, ScanResult]],
    ) -> List[ChangeEvent]:
        """Turn scan results into change events and notify listeners."""
        detected_at = utcnow()
        events: List[ChangeEvent] = []
        for library, result in results:
            change_type = classify_change(result.items_added, result.items_updated, result.items_removed)
            if change_type is None:
                continue
            events.append(
                ChangeEvent(
                    source_id=source.source_id,
                    source_name=source.display_name,
                    source_type=source.source_type,
                    library_id=library.library_id,
                    library_name=library.library_name,
                    change_type=change_type,
                    item_count=result.items_added + result.items_updated + result.items_removed,
                    items=preview(result.changed_items, self._timings.preview_size),
                    detected_at=detected_at,
                )
            )

        self._last_check[source.source_id] = detected_at
        if events:
            logger.info(
                "Library changes detected",
                extra={"source_id": source.source_id, "event_count": len(events)},
            )
            self._sink.changes_detected(events)
            for event in events:
                self._record(
                    f"{event.source_name} / {event.library_name}: "
                    f"{event.item_count} {event.change_type.value}"
                )
        self._sink.source_checked(source.source_id, detected_at)

        if any(event.change_type is not ChangeType.REMOVED for event in events):
            self._spawn_background(self._check_wishlist())
        return events

    async def _check_wishlist(self) -> None:
        if self._wishlist is None:
            return
        try:
            await self._wishlist.check_and_complete()
        except Exception:  # noqa: BLE001
            logger.exception("Wishlist completion check failed")

    def _record(self, message: str) -> None:
        if self._record_activity is None:
            return
        try:
            self._record_activity(message)
        except Exception:  # noqa: BLE001
            logger.debug("Activity recorder failed", exc_info=True)

    def _should_pause(self) -> bool:
        if not self._config.pause_during_manual_scan:
            return False
        return self._scanner.is_manual_scan_in_progress()

    def _spawn_cycle(self, source_id: str, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._cycles[task] = source_id
        task.add_done_callback(self._cycle_done)

    def _cycle_done(self, task: asyncio.Task) -> None:
        self._cycles.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Detection cycle failed", exc_info=exc)

    def _spawn_background(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _cancel_cycles(self) -> None:
        for task in list(self._cycles):
            task.cancel()

    def _cancel_startup(self) -> None:
        if self._startup is not None:
            self._startup.cancel()
            self._startup = None

    def _clear_timers(self) -> None:
        for strategy in self._strategies.values():
            if isinstance(strategy, PollWatch):
                strategy.cancel_timer()
            else:
                strategy.cancel_debounce()
                strategy.pending.clear()

    def _clear_pending(self) -> None:
        for strategy in self._strategies.values():
            if isinstance(strategy, FileWatch):
                strategy.pending.clear()

    def _emit_status(self) -> None:
        self._sink.monitor_status_changed(self.get_status())

    @property
    def strategies(self) -> Dict[str, WatchStrategy]:
        return dict(self._strategies)
