"""Filesystem watching for local and attached-database sources.

Wraps a watchdog observer, hands its events from the observer thread to the
event loop, and only reports a created or modified file once its size and
modification time have stopped changing.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Set, Tuple, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from ..orchestrator.config import MonitorTimings
from .models import is_media_path
from .network import is_network_path

logger = logging.getLogger(__name__)


class FileChangeKind(str, Enum):
    ADD = "add"
    CHANGE = "change"
    UNLINK = "unlink"


@dataclass(frozen=True)
class FileChange:
    kind: FileChangeKind
    path: str


ChangeCallback = Callable[[FileChange], None]
ErrorCallback = Callable[[Exception], None]
PathFilter = Callable[[str], bool]


def database_file_filter(database_path: str) -> PathFilter:
    """Accept a database file and its journal siblings."""
    target = Path(database_path).name
    names = {target, f"{target}-wal", f"{target}-journal"}

    def accept(path: str) -> bool:
        return Path(path).name in names

    return accept


class _WatchEventHandler(FileSystemEventHandler):
    """Runs on the observer thread; forwards accepted events to the loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        dispatch: Callable[[FileChangeKind, str], None],
        accept: PathFilter,
    ) -> None:
        self._loop = loop
        self._dispatch = dispatch
        self._accept = accept

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = os.fsdecode(event.src_path)
        if event.event_type == "moved":
            self._post(FileChangeKind.UNLINK, src)
            self._post(FileChangeKind.ADD, os.fsdecode(event.dest_path))
        elif event.event_type == "created":
            self._post(FileChangeKind.ADD, src)
        elif event.event_type == "modified":
            self._post(FileChangeKind.CHANGE, src)
        elif event.event_type == "deleted":
            self._post(FileChangeKind.UNLINK, src)

    def _post(self, kind: FileChangeKind, path: str) -> None:
        if not self._accept(path):
            return
        try:
            self._loop.call_soon_threadsafe(self._dispatch, kind, path)
        except RuntimeError:
            logger.debug("Dropping file event after event loop closed", extra={"path": path})


def _stat_signature(path: str) -> Optional[Tuple[int, int]]:
    try:
        stat = os.stat(path)
    except OSError:
        return None
    return stat.st_size, stat.st_mtime_ns


class FileWatcher:
    """Recursive watch over one library root.

    Network paths are watched with a polling observer because native change
    notifications are unreliable there. If the observer thread dies, the
    health check reports it through ``on_error`` so the owner can fall back
    to polling the source.
    """

    def __init__(
        self,
        path: str,
        *,
        on_change: ChangeCallback,
        on_error: ErrorCallback,
        timings: Optional[MonitorTimings] = None,
        accept: PathFilter = is_media_path,
        recursive: bool = True,
        use_polling: Optional[bool] = None,
    ) -> None:
        self._path = path
        self._on_change = on_change
        self._on_error = on_error
        self._timings = timings or MonitorTimings()
        self._accept = accept
        self._recursive = recursive
        self._use_polling = is_network_path(path) if use_polling is None else use_polling
        self._observer = None
        self._health_task: Optional[asyncio.Task] = None
        self._settling: Dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def path(self) -> str:
        return self._path

    @property
    def use_polling(self) -> bool:
        return self._use_polling

    @property
    def settling(self) -> Set[str]:
        return set(self._settling)

    def is_watching(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        """Start the observer.

        Raises:
            OSError: If the path cannot be watched
        """
        loop = asyncio.get_running_loop()
        watch_dir = self._path if self._recursive else str(Path(self._path).parent)
        if not os.path.isdir(watch_dir):
            raise FileNotFoundError(f"Watch path does not exist: {watch_dir}")

        if self._use_polling:
            observer = PollingObserver(timeout=self._timings.network_poll_seconds)
        else:
            observer = Observer()
        handler = _WatchEventHandler(loop, self._dispatch, self._accept)
        observer.schedule(handler, watch_dir, recursive=self._recursive)
        observer.start()
        self._observer = observer
        self._health_task = loop.create_task(self._health_check())
        logger.info(
            "Started file watcher",
            extra={"path": self._path, "use_polling": self._use_polling},
        )

    async def close(self) -> None:
        """Stop the observer and drop anything still settling.

        Never raises; teardown problems are logged.
        """
        self._closed = True
        tasks = list(self._settling.values())
        if self._health_task is not None:
            tasks.append(self._health_task)
        self._settling.clear()
        self._health_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # noqa: BLE001
                logger.debug("Watcher task ended with error", exc_info=True)

        observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            observer.stop()
            if observer.is_alive():
                await asyncio.to_thread(observer.join, 5.0)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to stop file watcher", extra={"path": self._path}, exc_info=True)
        logger.info("Stopped file watcher", extra={"path": self._path})

    def _dispatch(self, kind: FileChangeKind, path: str) -> None:
        if self._closed:
            return
        if kind is FileChangeKind.UNLINK:
            task = self._settling.pop(path, None)
            if task is not None:
                task.cancel()
            self._emit(FileChange(kind, path))
            return
        if path in self._settling:
            return
        task = asyncio.get_running_loop().create_task(self._settle(kind, path))
        self._settling[path] = task

    async def _settle(self, kind: FileChangeKind, path: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            signature = _stat_signature(path)
            stable_since = loop.time()
            while loop.time() - stable_since < self._timings.write_stability_seconds:
                await asyncio.sleep(self._timings.settle_poll_seconds)
                current = _stat_signature(path)
                if current != signature:
                    signature = current
                    stable_since = loop.time()
            if signature is None:
                # Vanished before it settled; the delete event reports it
                return
        finally:
            if self._settling.get(path) is asyncio.current_task():
                del self._settling[path]
        self._emit(FileChange(kind, path))

    def _emit(self, change: FileChange) -> None:
        try:
            self._on_change(change)
        except Exception:  # noqa: BLE001
            logger.exception("File change handler failed", extra={"path": change.path})

    async def _health_check(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._timings.watch_health_seconds)
            if self._closed:
                return
            if self._observer is None or not self._observer.is_alive():
                logger.warning("File watcher stopped unexpectedly", extra={"path": self._path})
                self._on_error(RuntimeError(f"Watcher for {self._path} stopped"))
                return


@dataclass
class FileWatch:
    """Source observed through a filesystem watcher."""

    watcher: FileWatcher
    debounce: Optional[asyncio.TimerHandle] = None
    pending: Set[str] = field(default_factory=set)

    def cancel_debounce(self) -> None:
        if self.debounce is not None:
            self.debounce.cancel()
            self.debounce = None


@dataclass
class PollWatch:
    """Source observed by periodic incremental scans."""

    interval: float
    timer: Optional[asyncio.TimerHandle] = None
    last_check: Optional[datetime] = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


WatchStrategy = Union[FileWatch, PollWatch]
