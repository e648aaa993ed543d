"""Tests for the single-flight background task scheduler."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeAnalyzer, FakeMonitor, FakeWishlist
from mediacatalog.monitoring.models import LibraryInfo, SourceType
from mediacatalog.orchestrator.exceptions import MediaCatalogError
from mediacatalog.orchestrator.models import (
    ActivityKind,
    ActivityLogEntry,
    Job,
    JobDefinition,
    JobKind,
    JobResult,
    JobStatus,
    utcnow,
)
from mediacatalog.orchestrator.ports import ScanResult
from mediacatalog.orchestrator.scheduler import format_completion_message


def scan(label: str, source_id: str = "s1", library_id: str = "lib1") -> JobDefinition:
    return JobDefinition(
        kind=JobKind.LIBRARY_SCAN,
        label=label,
        source_id=source_id,
        library_id=library_id,
    )


@pytest.mark.asyncio()
async def test_jobs_run_one_at_a_time_in_queue_order(make_scheduler, coordinator) -> None:
    """Queued jobs never overlap and start in FIFO order."""
    coordinator.gate = asyncio.Event()
    scheduler = make_scheduler()

    first = scheduler.enqueue(scan("A", library_id="a"))
    scheduler.enqueue(scan("B", library_id="b"))
    scheduler.enqueue(scan("C", library_id="c"))
    await coordinator.started.wait()

    state = scheduler.get_state()
    assert state.current_task is not None
    assert state.current_task.id == first
    assert state.current_task.status is JobStatus.RUNNING
    assert [job.label for job in state.queue] == ["B", "C"]

    coordinator.gate.set()
    await scheduler.join()

    assert [call[1] for call in coordinator.calls] == ["a", "b", "c"]
    assert coordinator.max_in_flight == 1
    state = scheduler.get_state()
    assert state.current_task is None
    assert state.queue == []
    assert [job.label for job in state.completed_tasks] == ["C", "B", "A"]
    assert all(job.status is JobStatus.COMPLETED for job in state.completed_tasks)


@pytest.mark.asyncio()
async def test_reorder_changes_execution_order(make_scheduler, coordinator) -> None:
    coordinator.gate = asyncio.Event()
    scheduler = make_scheduler()
    scheduler.enqueue(scan("A", library_id="a"))
    b = scheduler.enqueue(scan("B", library_id="b"))
    c = scheduler.enqueue(scan("C", library_id="c"))
    d = scheduler.enqueue(scan("D", library_id="d"))
    await coordinator.started.wait()

    scheduler.reorder([d, b, c])
    assert [job.id for job in scheduler.get_state().queue] == [d, b, c]

    coordinator.gate.set()
    await scheduler.join()
    assert [call[1] for call in coordinator.calls] == ["a", "d", "b", "c"]


@pytest.mark.asyncio()
async def test_reorder_with_mismatched_ids_is_ignored(make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.pause()
    a = scheduler.enqueue(scan("A"))
    b = scheduler.enqueue(scan("B"))

    scheduler.reorder([b])
    assert [job.id for job in scheduler.get_state().queue] == [a, b]

    scheduler.reorder([b, "task_unknown"])
    assert [job.id for job in scheduler.get_state().queue] == [a, b]


@pytest.mark.asyncio()
async def test_pause_holds_queue_until_resume(make_scheduler, coordinator) -> None:
    scheduler = make_scheduler()
    scheduler.pause()
    scheduler.enqueue(scan("A"))
    await asyncio.sleep(0.02)

    assert coordinator.calls == []
    assert scheduler.get_state().is_paused is True
    assert len(scheduler.get_state().queue) == 1

    scheduler.resume()
    await scheduler.join()
    assert len(coordinator.calls) == 1
    assert scheduler.get_state().completed_tasks[0].status is JobStatus.COMPLETED


@pytest.mark.asyncio()
async def test_remove_and_clear_queue(make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.pause()
    a = scheduler.enqueue(scan("A"))
    scheduler.enqueue(scan("B"))

    assert scheduler.remove(a) is True
    assert scheduler.remove(a) is False
    assert [job.label for job in scheduler.get_state().queue] == ["B"]

    scheduler.clear_queue()
    assert scheduler.get_state().queue == []


@pytest.mark.asyncio()
async def test_monitor_paused_once_per_busy_period(make_scheduler, coordinator) -> None:
    """A burst of jobs pauses the monitor once and resumes it once."""
    monitor = FakeMonitor(active=True)
    coordinator.gate = asyncio.Event()
    scheduler = make_scheduler(monitor=monitor)

    for index in range(5):
        scheduler.enqueue(scan(f"job {index}", library_id=f"lib{index}"))
    await coordinator.started.wait()
    for index in range(5, 10):
        scheduler.enqueue(scan(f"job {index}", library_id=f"lib{index}"))

    assert monitor.pauses == 1
    assert monitor.resumes == 0

    coordinator.gate.set()
    await scheduler.join()

    assert len(coordinator.calls) == 10
    assert monitor.pauses == 1
    assert monitor.resumes == 1
    assert monitor.active is True


@pytest.mark.asyncio()
async def test_inactive_monitor_is_left_alone(make_scheduler) -> None:
    monitor = FakeMonitor(active=False)
    scheduler = make_scheduler(monitor=monitor)

    scheduler.enqueue(scan("A"))
    await scheduler.join()

    assert monitor.pauses == 0
    assert monitor.resumes == 0


@pytest.mark.asyncio()
async def test_library_scan_completion_is_recorded(make_scheduler, coordinator, store, sink) -> None:
    coordinator.default = ScanResult(success=True, items_scanned=120, items_added=3)
    wishlist = FakeWishlist(completes=1)
    scheduler = make_scheduler(wishlist=wishlist)

    job_id = scheduler.enqueue(scan("Scan Movies"))
    await scheduler.join()

    completed = scheduler.get_state().completed_tasks[0]
    assert completed.id == job_id
    assert completed.status is JobStatus.COMPLETED
    assert completed.started_at is not None
    assert completed.completed_at is not None
    assert completed.result == JobResult(
        items_scanned=120, items_added=3, is_first_scan=True
    )

    log = scheduler.get_task_history()
    assert log[0].kind is ActivityKind.TASK_COMPLETE
    assert log[0].message == "Completed: Scan Movies (120 scanned, 3 added)"
    assert log[0].task_id == job_id

    persisted = store.list_task_history(10)
    assert [job.id for job in persisted] == [job_id]
    assert store.list_activity("task", 10)[0].message == log[0].message

    assert [args[0].id for args in sink.named("task_completed")] == [job_id]
    assert [args[0].id for args in sink.named("scan_completed")] == [job_id]
    await asyncio.wait_for(wishlist.checked.wait(), timeout=1.0)


@pytest.mark.asyncio()
async def test_scan_without_changes_skips_wishlist(make_scheduler, coordinator) -> None:
    coordinator.default = ScanResult(success=True, items_scanned=10, items_removed=2)
    wishlist = FakeWishlist()
    scheduler = make_scheduler(wishlist=wishlist)

    scheduler.enqueue(scan("Scan Movies"))
    await scheduler.join()
    await asyncio.sleep(0.02)

    assert wishlist.calls == 0


@pytest.mark.asyncio()
async def test_repeat_scan_is_not_first_scan(make_scheduler, store) -> None:
    store.set_last_scan_time("s1", "lib1", utcnow())
    scheduler = make_scheduler()
    scheduler.enqueue(scan("Scan Movies"))
    await scheduler.join()

    assert scheduler.get_state().completed_tasks[0].result.is_first_scan is False


@pytest.mark.asyncio()
async def test_progress_final_value_is_delivered(make_scheduler, coordinator, sink) -> None:
    coordinator.progress_steps = 5
    scheduler = make_scheduler()

    scheduler.enqueue(scan("Scan Movies"))
    await scheduler.join()

    updates = sink.named("task_progress")
    assert updates
    final = updates[-1][0].progress
    assert final.current == 5
    assert final.percentage == 100.0


@pytest.mark.asyncio()
async def test_cancel_current_scan(make_scheduler, coordinator) -> None:
    coordinator.gate = asyncio.Event()
    scheduler = make_scheduler()

    assert scheduler.cancel_current() is False

    scheduler.enqueue(scan("Scan Movies"))
    scheduler.enqueue(scan("Scan Shows", library_id="lib2"))
    await coordinator.started.wait()

    assert scheduler.cancel_current() is True
    await scheduler.join()

    assert coordinator.stop_calls == 1
    cancelled, completed = scheduler.get_state().completed_tasks[1], scheduler.get_state().completed_tasks[0]
    assert cancelled.status is JobStatus.CANCELLED
    assert completed.status is JobStatus.COMPLETED
    assert scheduler.get_task_history()[1].message == "Cancelled: Scan Movies"
    assert scheduler.get_task_history()[1].kind is ActivityKind.TASK_CANCELLED


@pytest.mark.asyncio()
async def test_cancel_current_analysis(make_scheduler) -> None:
    analyzer = FakeAnalyzer(analyzed=40)
    analyzer.gate = asyncio.Event()
    scheduler = make_scheduler(series_analyzer=analyzer)

    scheduler.enqueue(JobDefinition(kind=JobKind.SERIES_COMPLETENESS, label="Analyze series"))
    await analyzer.started.wait()
    scheduler.cancel_current()
    await scheduler.join()

    assert analyzer.cancelled is True
    assert scheduler.get_state().completed_tasks[0].status is JobStatus.CANCELLED


@pytest.mark.asyncio()
async def test_analysis_completion_notifies_library_update(make_scheduler, sink) -> None:
    analyzer = FakeAnalyzer(analyzed=12)
    scheduler = make_scheduler(collection_analyzer=analyzer)

    scheduler.enqueue(
        JobDefinition(
            kind=JobKind.COLLECTION_COMPLETENESS,
            label="Analyze collections",
            source_id="s1",
        )
    )
    await scheduler.join()

    job = scheduler.get_state().completed_tasks[0]
    assert job.status is JobStatus.COMPLETED
    assert job.result.items_scanned == 12
    assert analyzer.calls == [("s1", None)]
    assert sink.named("library_updated") == [("collection-completeness",)]
    assert sink.named("scan_completed") == []


@pytest.mark.asyncio()
async def test_incomplete_analysis_fails(make_scheduler) -> None:
    scheduler = make_scheduler(music_analyzer=FakeAnalyzer(completed=False))

    scheduler.enqueue(JobDefinition(kind=JobKind.MUSIC_COMPLETENESS, label="Analyze music"))
    await scheduler.join()

    job = scheduler.get_state().completed_tasks[0]
    assert job.status is JobStatus.FAILED
    assert job.error == "Music analysis did not complete"


@pytest.mark.asyncio()
async def test_failures_do_not_stop_the_loop(make_scheduler, coordinator) -> None:
    coordinator.results[("s1", "bad")] = ScanResult(success=False, errors=["disk offline"])
    coordinator.results[("s1", "boom")] = RuntimeError("connection reset")
    scheduler = make_scheduler()

    scheduler.enqueue(scan("Bad", library_id="bad"))
    scheduler.enqueue(scan("Boom", library_id="boom"))
    scheduler.enqueue(JobDefinition(kind=JobKind.LIBRARY_SCAN, label="Missing ids", source_id="s1"))
    scheduler.enqueue(scan("Good", library_id="good"))
    await scheduler.join()

    jobs = {job.label: job for job in scheduler.get_state().completed_tasks}
    assert jobs["Bad"].status is JobStatus.FAILED
    assert jobs["Bad"].error == "disk offline"
    assert jobs["Boom"].error == "connection reset"
    assert jobs["Missing ids"].status is JobStatus.FAILED
    assert "library_id" in jobs["Missing ids"].error
    assert jobs["Good"].status is JobStatus.COMPLETED
    messages = [entry.message for entry in scheduler.get_task_history()]
    assert "Failed: Bad - disk offline" in messages


@pytest.mark.asyncio()
async def test_source_scan_covers_enabled_libraries(
    make_scheduler, coordinator, store, register_source
) -> None:
    register_source(store, "plex1", SourceType.PLEX)
    store.set_libraries(
        "plex1",
        [
            LibraryInfo("movies", "Movies"),
            LibraryInfo("shows", "Shows"),
            LibraryInfo("old", "Archive", is_enabled=False),
        ],
    )
    coordinator.default = ScanResult(success=True, items_scanned=5, items_added=1)
    scheduler = make_scheduler()

    scheduler.enqueue(JobDefinition(kind=JobKind.SOURCE_SCAN, label="Scan Plex", source_id="plex1"))
    await scheduler.join()

    assert sorted(call[1] for call in coordinator.calls) == ["movies", "shows"]
    job = scheduler.get_state().completed_tasks[0]
    assert job.status is JobStatus.COMPLETED
    assert job.result.items_scanned == 10
    assert job.result.items_added == 2


@pytest.mark.asyncio()
async def test_source_scan_reports_library_failures(
    make_scheduler, coordinator, store, register_source
) -> None:
    register_source(
        store,
        "plex1",
        SourceType.PLEX,
        libraries=(("movies", "Movies"), ("shows", "Shows")),
    )
    coordinator.results[("plex1", "shows")] = ScanResult(success=False, errors=["timeout"])
    scheduler = make_scheduler()

    scheduler.enqueue(JobDefinition(kind=JobKind.SOURCE_SCAN, label="Scan Plex", source_id="plex1"))
    await scheduler.join()

    assert len(coordinator.calls) == 2
    job = scheduler.get_state().completed_tasks[0]
    assert job.status is JobStatus.FAILED
    assert job.error == "Shows: timeout"


@pytest.mark.asyncio()
async def test_source_scan_continues_after_library_raises(
    make_scheduler, coordinator, store, register_source
) -> None:
    """An unexpected scanner exception fails one library, not the rest."""
    register_source(
        store,
        "plex1",
        SourceType.PLEX,
        libraries=(("movies", "Movies"), ("shows", "Shows")),
    )
    coordinator.results[("plex1", "movies")] = ConnectionError("server unreachable")
    coordinator.results[("plex1", "shows")] = ScanResult(success=True, items_scanned=3)
    scheduler = make_scheduler()

    scheduler.enqueue(JobDefinition(kind=JobKind.SOURCE_SCAN, label="Scan Plex", source_id="plex1"))
    await scheduler.join()

    assert [call[1] for call in coordinator.calls] == ["movies", "shows"]
    job = scheduler.get_state().completed_tasks[0]
    assert job.status is JobStatus.FAILED
    assert job.error == "Movies: server unreachable"


@pytest.mark.asyncio()
async def test_shutdown_marks_outstanding_jobs_interrupted(make_scheduler, coordinator, store) -> None:
    coordinator.gate = asyncio.Event()
    scheduler = make_scheduler()

    running = scheduler.enqueue(scan("A", library_id="a"))
    scheduler.enqueue(scan("B", library_id="b"))
    scheduler.enqueue(scan("C", library_id="c"))
    await coordinator.started.wait()

    await scheduler.shutdown()

    assert len(coordinator.calls) == 1
    persisted = {job.label: job for job in store.list_task_history(10)}
    assert set(persisted) == {"A", "B", "C"}
    assert all(job.status is JobStatus.INTERRUPTED for job in persisted.values())
    assert all(job.completed_at is not None for job in persisted.values())
    assert persisted["A"].id == running

    messages = {entry.message for entry in store.list_activity("task", 10)}
    assert messages == {
        "Interrupted (app quit): A",
        "Interrupted (app quit, was queued): B",
        "Interrupted (app quit, was queued): C",
    }
    assert scheduler.get_state().queue == []

    with pytest.raises(MediaCatalogError):
        scheduler.enqueue(scan("D"))


@pytest.mark.asyncio()
async def test_remove_tasks_for_source(make_scheduler, coordinator) -> None:
    coordinator.gate = asyncio.Event()
    scheduler = make_scheduler()

    scheduler.enqueue(scan("A", source_id="s1"))
    scheduler.enqueue(scan("B", source_id="s2"))
    scheduler.enqueue(scan("C", source_id="s1"))
    await coordinator.started.wait()

    scheduler.remove_tasks_for_source("s1")
    assert [job.label for job in scheduler.get_state().queue] == ["B"]

    await scheduler.join()
    assert [call[0] for call in coordinator.calls] == ["s1", "s2"]
    labels = [job.label for job in scheduler.get_state().completed_tasks]
    assert "B" in labels


@pytest.mark.asyncio()
async def test_removed_source_leaves_no_task_log_entries(make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.enqueue(scan("A", source_id="s1"))
    kept = scheduler.enqueue(scan("B", source_id="s2"))
    await scheduler.join()

    scheduler.remove_tasks_for_source("s1")

    assert [job.id for job in scheduler.get_state().completed_tasks] == [kept]
    assert [entry.task_id for entry in scheduler.get_task_history()] == [kept]


@pytest.mark.asyncio()
async def test_history_reload_and_clear(make_scheduler, store) -> None:
    scheduler = make_scheduler()
    scheduler.enqueue(scan("A"))
    await scheduler.join()
    scheduler.add_monitoring_event("Plex / Movies: 2 added")

    restored = make_scheduler()
    restored.load_persisted_history()
    assert [job.label for job in restored.get_state().completed_tasks] == ["A"]
    assert len(restored.get_task_history()) == 1
    assert restored.get_monitoring_history()[0].message == "Plex / Movies: 2 added"

    restored.clear_task_history()
    assert restored.get_state().completed_tasks == []
    assert restored.get_task_history() == []
    assert store.list_task_history(10) == []
    assert len(store.list_activity("monitoring", 10)) == 1

    restored.clear_monitoring_history()
    assert restored.get_monitoring_history() == []
    assert store.list_activity("monitoring", 10) == []


@pytest.mark.asyncio()
async def test_sink_failures_do_not_break_jobs(make_scheduler) -> None:
    class ExplodingSink:
        def __getattr__(self, name):
            def fail(*args):
                raise RuntimeError("window closed")

            return fail

    scheduler = make_scheduler(sink=ExplodingSink())
    scheduler.enqueue(scan("A"))
    await scheduler.join()

    assert scheduler.get_state().completed_tasks[0].status is JobStatus.COMPLETED


class TestCompletionMessages:
    """Tests for history message formatting."""

    def _job(self, status: JobStatus, **kwargs) -> Job:
        job = Job(id="task_1", kind=JobKind.LIBRARY_SCAN, label="Scan Movies", status=status)
        for key, value in kwargs.items():
            setattr(job, key, value)
        return job

    def test_completed_lists_nonzero_counts(self) -> None:
        job = self._job(
            JobStatus.COMPLETED,
            result=JobResult(items_scanned=10, items_updated=2, items_removed=1),
        )
        assert format_completion_message(job) == "Completed: Scan Movies (10 scanned, 2 updated, 1 removed)"

    def test_completed_without_counts(self) -> None:
        assert format_completion_message(self._job(JobStatus.COMPLETED)) == "Completed: Scan Movies"

    def test_failed_includes_error(self) -> None:
        job = self._job(JobStatus.FAILED, error="disk offline")
        assert format_completion_message(job) == "Failed: Scan Movies - disk offline"

    def test_interrupted_distinguishes_queued_jobs(self) -> None:
        queued = self._job(JobStatus.INTERRUPTED)
        running = self._job(JobStatus.INTERRUPTED, started_at=utcnow())
        assert format_completion_message(queued) == "Interrupted (app quit, was queued): Scan Movies"
        assert format_completion_message(running) == "Interrupted (app quit): Scan Movies"

    def test_activity_kind_for_status(self) -> None:
        entry = ActivityLogEntry.create(ActivityKind.for_status(JobStatus.FAILED), "x")
        assert entry.kind is ActivityKind.TASK_FAILED
        assert entry.kind.partition == "task"
        assert entry.id.startswith("log_")

    def test_finish_requires_terminal_status(self) -> None:
        job = self._job(JobStatus.RUNNING)
        with pytest.raises(ValueError):
            job.finish(JobStatus.QUEUED)
        assert job.completed_at is None

        job.finish(JobStatus.CANCELLED)
        assert job.status is JobStatus.CANCELLED
        assert job.completed_at is not None
