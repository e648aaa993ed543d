"""Composition root for the background services."""

from __future__ import annotations

import logging
from typing import Optional

from ..monitoring.models import MonitoredSource
from ..monitoring.monitor import LibraryChangeMonitor, WatcherFactory
from ..persistence.sqlite_store import SQLiteStore
from .config import BackgroundServicesConfig
from .coordination import LibraryScanCoordinator, LibraryScanner
from .ports import (
    ChangeSink,
    CompletenessAnalyzer,
    PersistentStore,
    ScanCoordinator,
    SourceCatalog,
    WishlistCompleter,
)
from .scheduler import BackgroundTaskScheduler

logger = logging.getLogger(__name__)


class BackgroundServices:
    """Builds and owns the scheduler and the change monitor.

    Both services share one scan coordinator. The scheduler holds the
    monitor so it can pause it while jobs run, and the monitor records
    detected changes in the scheduler's monitoring log.
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
        config: Optional[BackgroundServicesConfig] = None,
        watcher_factory: Optional[WatcherFactory] = None,
    ) -> None:
        self.config = config or BackgroundServicesConfig()
        self.scan_coordinator = scan_coordinator
        self.store = store
        self.monitor = LibraryChangeMonitor(
            scan_coordinator=scan_coordinator,
            catalog=catalog,
            store=store,
            wishlist=wishlist,
            sink=sink,
            timings=self.config.monitor,
            watcher_factory=watcher_factory,
        )
        self.scheduler = BackgroundTaskScheduler(
            scan_coordinator=scan_coordinator,
            store=store,
            catalog=catalog,
            series_analyzer=series_analyzer,
            collection_analyzer=collection_analyzer,
            music_analyzer=music_analyzer,
            wishlist=wishlist,
            sink=sink,
            monitor=self.monitor,
            config=self.config.scheduler,
        )
        self.monitor.set_activity_recorder(self.scheduler.add_monitoring_event)
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: BackgroundServicesConfig,
        *,
        scanner: LibraryScanner,
        series_analyzer: Optional[CompletenessAnalyzer] = None,
        collection_analyzer: Optional[CompletenessAnalyzer] = None,
        music_analyzer: Optional[CompletenessAnalyzer] = None,
        wishlist: Optional[WishlistCompleter] = None,
        sink: Optional[ChangeSink] = None,
    ) -> "BackgroundServices":
        """Wire the services against the SQLite store named in ``config``."""
        store = SQLiteStore(config.storage.database_path)
        return cls(
            scan_coordinator=LibraryScanCoordinator(scanner=scanner, store=store),
            store=store,
            catalog=store,
            series_analyzer=series_analyzer,
            collection_analyzer=collection_analyzer,
            music_analyzer=music_analyzer,
            wishlist=wishlist,
            sink=sink,
            config=config,
        )

    async def start(self) -> None:
        if self._started:
            return
        self.scheduler.load_persisted_history()
        await self.monitor.initialize()
        self._started = True
        logger.info("Background services started")

    async def shutdown(self) -> None:
        if not self._started:
            return
        await self.scheduler.shutdown()
        await self.monitor.stop()
        self._started = False
        logger.info("Background services stopped")

    async def add_source(self, source: MonitoredSource) -> None:
        await self.monitor.add_source(source)

    async def remove_source(self, source_id: str) -> None:
        self.scheduler.remove_tasks_for_source(source_id)
        await self.monitor.remove_source(source_id)

    async def __aenter__(self) -> "BackgroundServices":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()
