"""Shared fixtures and collaborator doubles for the background services."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from mediacatalog.monitoring.models import LibraryInfo, MonitoredSource, SourceType
from mediacatalog.monitoring.watch import FileChange, FileChangeKind
from mediacatalog.orchestrator.config import MonitorTimings, SchedulerConfig
from mediacatalog.orchestrator.models import JobProgress
from mediacatalog.orchestrator.ports import AnalysisResult, ScanOptions, ScanResult
from mediacatalog.orchestrator.scheduler import BackgroundTaskScheduler
from mediacatalog.persistence.sqlite_store import SQLiteStore


class FakeScanCoordinator:
    """Scan coordinator double with per-library results and an optional gate.

    While ``gate`` is set to an unset event every scan blocks on it, which
    lets tests observe the scheduler mid-job. ``stop_scan`` releases the gate.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, ScanOptions]] = []
        self.results: Dict[Tuple[str, str], Any] = {}
        self.default = ScanResult(success=True)
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.manual = False
        self.stop_calls = 0
        self.progress_steps = 0
        self.in_flight = 0
        self.max_in_flight = 0

    def is_manual_scan_in_progress(self) -> bool:
        return self.manual

    def stop_scan(self) -> None:
        self.stop_calls += 1
        if self.gate is not None:
            self.gate.set()

    async def scan_library(
        self,
        source_id: str,
        library_id: str,
        options: Optional[ScanOptions] = None,
    ) -> ScanResult:
        options = options or ScanOptions()
        self.calls.append((source_id, library_id, options))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.started.set()
        try:
            if options.on_progress is not None:
                for step in range(1, self.progress_steps + 1):
                    options.on_progress(
                        JobProgress(current=step, total=self.progress_steps, phase="Scanning")
                    )
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0)
        finally:
            self.in_flight -= 1

        outcome = self.results.get((source_id, library_id), self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeAnalyzer:
    def __init__(self, *, completed: bool = True, analyzed: int = 0) -> None:
        self.completed = completed
        self.analyzed = analyzed
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.cancelled = False
        self.calls: List[Tuple[Optional[str], Optional[str]]] = []

    async def analyze_all(
        self,
        on_progress: Callable[[JobProgress], None],
        source_id: Optional[str] = None,
        library_id: Optional[str] = None,
    ) -> AnalysisResult:
        self.calls.append((source_id, library_id))
        self.started.set()
        on_progress(JobProgress(current=0, total=1, phase="Analyzing"))
        if self.gate is not None:
            await self.gate.wait()
        if self.cancelled:
            return AnalysisResult(completed=False, analyzed=0)
        return AnalysisResult(completed=self.completed, analyzed=self.analyzed)

    def cancel(self) -> None:
        self.cancelled = True
        if self.gate is not None:
            self.gate.set()


class FakeWishlist:
    def __init__(self, completes: int = 0) -> None:
        self.completes = completes
        self.calls = 0
        self.checked = asyncio.Event()

    async def check_and_complete(self) -> int:
        self.calls += 1
        self.checked.set()
        return self.completes


class FakeMonitor:
    """Monitor control double counting pause and resume calls."""

    def __init__(self, *, active: bool = True) -> None:
        self.active = active
        self.paused = False
        self.pauses = 0
        self.resumes = 0

    def is_active_and_enabled(self) -> bool:
        return self.active

    def pause(self) -> None:
        self.pauses += 1
        self.active = False
        self.paused = True

    def resume(self) -> None:
        self.resumes += 1
        if self.paused:
            self.paused = False
            self.active = True


class RecordingChangeSink:
    """Change sink that records every notification as ``(method, args)``."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, tuple]] = []

    def __getattr__(self, name: str) -> Callable[..., None]:
        if name.startswith("_"):
            raise AttributeError(name)

        def record(*args: Any) -> None:
            self.calls.append((name, args))

        return record

    def named(self, name: str) -> List[tuple]:
        return [args for method, args in self.calls if method == name]

    def messages(self) -> List[str]:
        return [args[0] for args in self.named("monitor_event")]


class FakeWatcher:
    """Stands in for :class:`FileWatcher`; tests push changes with ``emit``."""

    def __init__(
        self,
        source: MonitoredSource,
        on_change: Callable[[FileChange], None],
        on_error: Callable[[Exception], None],
        *,
        fail: bool = False,
        use_polling: bool = False,
    ) -> None:
        self.source = source
        self.on_change = on_change
        self.on_error = on_error
        self.fail = fail
        self.use_polling = use_polling
        self.started = False
        self.closed = False

    def start(self) -> None:
        if self.fail:
            raise OSError("inotify watch limit reached")
        self.started = True

    async def close(self) -> None:
        self.closed = True

    def emit(self, path: str, kind: FileChangeKind = FileChangeKind.ADD) -> None:
        self.on_change(FileChange(kind, path))


class WatcherFactory:
    def __init__(self) -> None:
        self.watchers: List[FakeWatcher] = []
        self.failing: set = set()

    def __call__(self, source, on_change, on_error) -> FakeWatcher:
        watcher = FakeWatcher(
            source,
            on_change,
            on_error,
            fail=source.source_id in self.failing,
        )
        self.watchers.append(watcher)
        return watcher

    def for_source(self, source_id: str) -> FakeWatcher:
        return [w for w in self.watchers if w.source.source_id == source_id][-1]


@pytest.fixture
def store() -> SQLiteStore:
    store = SQLiteStore(Path(":memory:"))
    yield store
    store.close()


@pytest.fixture
def coordinator() -> FakeScanCoordinator:
    return FakeScanCoordinator()


@pytest.fixture
def sink() -> RecordingChangeSink:
    return RecordingChangeSink()


@pytest.fixture
def watcher_factory() -> WatcherFactory:
    return WatcherFactory()


@pytest.fixture
def fast_timings() -> MonitorTimings:
    return MonitorTimings(
        debounce_seconds=0.05,
        write_stability_seconds=0.0,
        settle_poll_seconds=0.01,
        startup_delay_seconds=0.0,
        first_poll_delay_seconds=0.01,
        poll_timeout_seconds=1.0,
    )


@pytest.fixture
def make_scheduler(store, coordinator, sink):
    """Build a scheduler around the shared doubles; keyword overrides win."""

    def factory(**overrides: Any) -> BackgroundTaskScheduler:
        kwargs: Dict[str, Any] = dict(
            scan_coordinator=coordinator,
            store=store,
            catalog=store,
            sink=sink,
            config=SchedulerConfig(progress_interval_seconds=0.01),
        )
        kwargs.update(overrides)
        return BackgroundTaskScheduler(**kwargs)

    return factory


@pytest.fixture
def wait_until():
    async def wait(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return wait


def add_source(
    store: SQLiteStore,
    source_id: str,
    source_type: SourceType,
    *,
    name: Optional[str] = None,
    libraries: Tuple[Tuple[str, str], ...] = (("lib1", "Movies"),),
    **connection: Any,
) -> MonitoredSource:
    source = MonitoredSource(
        source_id=source_id,
        source_type=source_type,
        display_name=name or source_id,
        connection_config=dict(connection),
    )
    store.upsert_source(source)
    store.set_libraries(
        source_id,
        [LibraryInfo(library_id=lib_id, library_name=lib_name) for lib_id, lib_name in libraries],
    )
    return source


@pytest.fixture
def register_source():
    return add_source
