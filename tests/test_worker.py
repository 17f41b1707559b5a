from __future__ import annotations

import logging
import threading
import time
from datetime import UTC, datetime, timedelta

import allure
import pytest

from durable_tasks.core.breaker import BreakerBoard, BreakerPhase
from durable_tasks.core.errors import (
    PermanentTaskError,
    RateLimitedError,
    StoreUnavailableError,
    TaskCancelledError,
    TransientTaskError,
)
from durable_tasks.core.models import ErrorCategory, TaskCreate, TaskStatus
from durable_tasks.core.registry import HandlerRegistry, TaskContext
from durable_tasks.core.retry import RetryPolicy
from durable_tasks.handlers.builtin import REGISTRY as BUILTIN_REGISTRY
from durable_tasks.queue.repository import MAX_SCHEDULE_DELAY_SECONDS, TaskStore
from durable_tasks.queue.services import TaskQueueService
from durable_tasks.queue.worker import MaintenanceSettings, TaskWorker

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Worker"),
]

NO_DELAY = RetryPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0)


def _worker(store: TaskStore, registry: HandlerRegistry | None = None, **kwargs) -> TaskWorker:
    kwargs.setdefault("service", TaskQueueService(store=store, policy=NO_DELAY))
    kwargs.setdefault("heartbeat_interval_seconds", 0)
    kwargs.setdefault("poll_interval_seconds", 0)
    kwargs.setdefault("max_poll_interval_seconds", 0)
    return TaskWorker(
        store=store,
        registry=registry or BUILTIN_REGISTRY,
        worker_id="worker-test",
        **kwargs,
    )


def _submit(store: TaskStore, task_type: str = "echo", **kwargs):
    return store.submit(TaskCreate(task_type=task_type, **kwargs))


def test_successful_task_is_completed(store: TaskStore) -> None:
    task = _submit(store, payload={"b": 2, "a": 1})

    summary = _worker(store).run_once()

    assert (summary.processed, summary.succeeded) == (1, 1)
    stored = store.get_task(task.task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.result_summary == '{"a": 1, "b": 2}'


def test_empty_queue_counts_idle_poll(store: TaskStore) -> None:
    summary = _worker(store).run_once()
    assert summary.idle_polls == 1
    assert summary.processed == 0


def test_transient_failure_retries_until_budget_then_dead_letters(store: TaskStore) -> None:
    task = _submit(store, payload={"fail": "transient"}, max_retries=3)
    worker = _worker(store)

    attempts = 0
    while store.get_task(task.task_id) is not None:
        worker.run_once()
        attempts += 1
        assert attempts <= 4

    assert attempts == 4
    [entry] = store.list_dead_letters()
    assert entry.task_id == task.task_id
    assert entry.retry_count == 3
    assert entry.error_category == ErrorCategory.TRANSIENT
    event_types = [event.event_type for event in store.list_task_events(task_id=task.task_id)]
    assert event_types.count("claimed") == 4
    assert event_types.count("retry_scheduled") == 3
    assert event_types[-1] == "dead_lettered"


def test_permanent_failure_dead_letters_immediately(store: TaskStore) -> None:
    task = _submit(store, payload={"fail": "permanent"}, max_retries=5)

    summary = _worker(store).run_once()

    assert summary.failed == 1
    assert store.get_task(task.task_id) is None
    [entry] = store.list_dead_letters()
    assert entry.retry_count == 0
    assert entry.error_category == ErrorCategory.PERMANENT


def test_code_defect_raises_operator_alert(
    store: TaskStore,
    caplog: pytest.LogCaptureFixture,
) -> None:
    task = _submit(store, payload={"fail": "defect"}, max_retries=5)

    with caplog.at_level(logging.CRITICAL, logger="durable_tasks.alerts"):
        summary = _worker(store).run_once()

    assert summary.failed == 1
    alerts = [record for record in caplog.records if record.name == "durable_tasks.alerts"]
    assert len(alerts) == 1
    assert task.task_id in alerts[0].getMessage()
    [entry] = store.list_dead_letters()
    assert entry.error_category == ErrorCategory.CODE_DEFECT
    event_types = [event.event_type for event in store.list_task_events(task_id=task.task_id)]
    assert event_types[-2:] == ["dead_lettered", "operator_alert"]


def test_unknown_failure_gets_reduced_budget(store: TaskStore) -> None:
    task = _submit(store, payload={"fail": "unknown"}, max_retries=5)
    worker = _worker(store)

    first = worker.run_once()
    second = worker.run_once()

    assert first.retried == 1
    assert second.failed == 1
    assert store.get_task(task.task_id) is None
    assert store.list_dead_letters()[0].error_category == ErrorCategory.UNKNOWN


def test_open_breaker_releases_without_spending_budget(store: TaskStore, clock) -> None:
    registry = HandlerRegistry()

    @registry.handler("flaky", dependency="payments")
    def flaky(context: TaskContext) -> None:
        raise TransientTaskError("payments gateway down")

    board = BreakerBoard(failure_threshold=1, recovery_timeout_seconds=300, clock=clock)
    task = _submit(store, "flaky", max_retries=3)
    worker = _worker(store, registry, breakers=board)

    first = worker.run_once()
    assert first.retried == 1
    assert board.get("payments").phase == BreakerPhase.OPEN

    second = worker.run_once()
    assert second.released == 1
    stored = store.get_task(task.task_id)
    assert stored.status == TaskStatus.PENDING
    assert stored.retry_count == 1
    assert stored.scheduled_at > datetime.now(tz=UTC)
    released = store.list_task_events(task_id=task.task_id)[-1]
    assert released.event_type == "released"
    assert released.details["reason"] == "breaker_open:payments"


def test_permanent_errors_do_not_trip_the_default_breaker(store: TaskStore) -> None:
    registry = HandlerRegistry()

    @registry.handler("strict", dependency="api")
    def strict(context: TaskContext) -> None:
        raise PermanentTaskError("rejected")

    worker = _worker(store, registry)
    for _ in range(6):
        _submit(store, "strict")
        worker.run_once()

    assert worker.breakers.get("api").phase == BreakerPhase.CLOSED
    assert len(store.list_dead_letters()) == 6


def test_bad_input_does_not_trip_the_breaker(store: TaskStore) -> None:
    registry = HandlerRegistry()
    calls: list[str] = []

    @registry.handler("lookup", dependency="svc")
    def lookup(context: TaskContext) -> None:
        calls.append(context.task.task_id)
        raise ValueError("unknown customer id")

    worker = _worker(store, registry)
    for _ in range(6):
        _submit(store, "lookup")
        worker.run_once()

    assert len(calls) == 6
    assert worker.breakers.get("svc").phase == BreakerPhase.CLOSED
    assert worker.breakers.get("svc").consecutive_failures == 0
    assert len(store.list_dead_letters()) == 6


def test_huge_retry_after_is_capped_and_task_rescheduled(store: TaskStore) -> None:
    registry = HandlerRegistry()

    @registry.handler("throttled")
    def throttled(context: TaskContext) -> None:
        raise RateLimitedError("slow down", retry_after_seconds=99_999_999_999)

    task = _submit(store, "throttled", max_retries=3)
    summary = _worker(store, registry).run_once()

    assert summary.retried == 1
    stored = store.get_task(task.task_id)
    assert stored.status == TaskStatus.PENDING
    assert stored.retry_count == 1
    assert stored.scheduled_at <= datetime.now(tz=UTC) + timedelta(days=1, minutes=1)
    event = store.list_task_events(task_id=task.task_id)[-1]
    assert event.details["decision_reason"] == "server_suggested_delay_capped"


def test_infinite_retry_after_falls_back_to_backoff(store: TaskStore) -> None:
    registry = HandlerRegistry()

    @registry.handler("throttled")
    def throttled(context: TaskContext) -> None:
        raise RateLimitedError("slow down", retry_after_seconds=float("inf"))

    task = _submit(store, "throttled", max_retries=3)
    summary = _worker(store, registry).run_once()

    assert summary.retried == 1
    stored = store.get_task(task.task_id)
    assert stored.status == TaskStatus.PENDING
    assert stored.retry_count == 1
    assert stored.last_error_category == ErrorCategory.RATE_LIMITED


def test_store_bounds_delay_when_policy_allows_huge_hints(store: TaskStore) -> None:
    registry = HandlerRegistry()

    @registry.handler("throttled")
    def throttled(context: TaskContext) -> None:
        raise RateLimitedError("slow down", retry_after_seconds=1e15)

    policy = RetryPolicy(max_suggested_delay_seconds=float("inf"))
    task = _submit(store, "throttled", max_retries=3)
    worker = _worker(store, registry, service=TaskQueueService(store=store, policy=policy))

    summary = worker.run_once()

    assert summary.retried == 1
    stored = store.get_task(task.task_id)
    assert stored.status == TaskStatus.PENDING
    limit = datetime.now(tz=UTC) + timedelta(seconds=MAX_SCHEDULE_DELAY_SECONDS + 60)
    assert stored.scheduled_at <= limit


def test_draining_releases_unstarted_tasks_of_a_batch(store: TaskStore) -> None:
    registry = HandlerRegistry()
    worker_box: list[TaskWorker] = []

    @registry.handler("job")
    def job(context: TaskContext) -> str:
        worker_box[0].request_stop(reason="test")
        return "finished"

    for _ in range(3):
        _submit(store, "job")
    worker = _worker(store, registry, batch_size=3)
    worker_box.append(worker)

    summary = worker.run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    assert summary.released == 2
    counts = store.counts()
    assert (counts.completed, counts.pending, counts.processing) == (1, 2, 0)
    assert worker.run_once().idle_polls == 1


def test_sleep_handler_stops_early_when_worker_drains(store: TaskStore) -> None:
    task = _submit(store, "sleep", payload={"seconds": 30})
    worker = _worker(store)
    timer = threading.Timer(0.5, worker.request_stop, kwargs={"reason": "test"})
    timer.start()
    try:
        started = time.monotonic()
        summary = worker.run_once()
    finally:
        timer.cancel()

    assert time.monotonic() - started < 10
    assert summary.released == 1
    stored = store.get_task(task.task_id)
    assert stored.status == TaskStatus.PENDING
    assert stored.retry_count == 0
    assert store.list_task_events(task_id=task.task_id)[-1].details["reason"] == (
        "cancelled_by_shutdown"
    )


def test_handler_raising_task_cancelled_directly(store: TaskStore) -> None:
    registry = HandlerRegistry()

    @registry.handler("stoppable")
    def stoppable(context: TaskContext) -> None:
        raise TaskCancelledError("stop")

    task = _submit(store, "stoppable")
    summary = _worker(store, registry).run_once()

    assert summary.released == 1
    assert store.get_task(task.task_id).retry_count == 0


def test_sleep_handler_reports_progress(store: TaskStore) -> None:
    task = _submit(store, "sleep", payload={"seconds": 0.05})

    summary = _worker(store, progress_min_interval_seconds=0).run_once()

    assert summary.succeeded == 1
    stored = store.get_task(task.task_id)
    assert stored.progress_percent == 100
    assert stored.result_summary == "slept 0.05s"
    progress = [
        event for event in store.list_task_events(task_id=task.task_id)
        if event.event_type == "progress"
    ]
    assert progress
    assert progress[-1].details == {"percent": 100, "message": "done"}


def test_handler_timeout_is_a_transient_failure(store: TaskStore) -> None:
    registry = HandlerRegistry()

    @registry.handler("slow", timeout_seconds=0.05)
    def slow(context: TaskContext) -> None:
        context.stop_event.wait(0.5)

    task = _submit(store, "slow", max_retries=1)
    summary = _worker(store, registry).run_once()

    assert summary.retried == 1
    assert store.get_task(task.task_id).last_error_category == ErrorCategory.TRANSIENT


def test_timed_out_handler_is_told_to_stop(store: TaskStore) -> None:
    registry = HandlerRegistry()
    cancel_seen = threading.Event()

    @registry.handler("slow", timeout_seconds=0.1)
    def slow(context: TaskContext) -> None:
        deadline = time.monotonic() + 3
        while time.monotonic() < deadline:
            if context.cancelled:
                cancel_seen.set()
                return
            time.sleep(0.01)

    task = _submit(store, "slow", max_retries=2)
    worker = _worker(store, registry)

    summary = worker.run_once()

    assert summary.retried == 1
    assert cancel_seen.wait(2)
    assert not worker.stop_event.is_set()
    assert store.get_task(task.task_id).retry_count == 1


def test_store_outage_mid_batch_releases_unstarted_tasks(
    store: TaskStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    for _ in range(3):
        _submit(store)

    def store_down(**kwargs: object) -> bool:
        raise StoreUnavailableError("Task store unavailable: disk I/O error")

    monkeypatch.setattr(store, "complete", store_down)
    worker = _worker(store, batch_size=3)

    with pytest.raises(StoreUnavailableError):
        worker.run_once()

    counts = store.counts()
    assert counts.processing == 1
    assert counts.pending == 2
    released = store.list_tasks(status=TaskStatus.PENDING)
    assert len(released) == 2
    for task in released:
        event = store.list_task_events(task_id=task.task_id)[-1]
        assert event.event_type == "released"
        assert event.details["reason"] == "store_unavailable"
        assert task.retry_count == 0


def test_run_loop_registers_and_deregisters(store: TaskStore) -> None:
    seen_workers: list[list[str]] = []
    registry = HandlerRegistry()

    @registry.handler("observe")
    def observe(context: TaskContext) -> None:
        seen_workers.append([worker.worker_id for worker in store.list_workers()])

    _submit(store, "observe")
    _submit(store, "observe")

    summary = _worker(store, registry).run_loop(max_idle_polls=2)

    assert summary.succeeded == 2
    assert summary.idle_polls == 2
    assert seen_workers == [["worker-test"], ["worker-test"]]
    assert store.list_workers() == []


def test_run_loop_honors_max_tasks(store: TaskStore) -> None:
    for _ in range(5):
        _submit(store)

    summary = _worker(store).run_loop(max_tasks=2)

    assert summary.processed == 2
    assert store.counts().pending == 3


def test_run_loop_stops_when_stop_event_is_set(store: TaskStore) -> None:
    worker = _worker(store, poll_interval_seconds=0.01, max_poll_interval_seconds=0.05)
    worker.stop_event.set()

    summary = worker.run_loop()

    assert summary.processed == 0
    assert store.list_workers() == []


def test_heartbeat_re_registers_after_sweep(store: TaskStore) -> None:
    registry = HandlerRegistry()
    reappeared: list[bool] = []

    @registry.handler("wait")
    def wait(context: TaskContext) -> None:
        store.deregister_worker(worker_id=context.worker_id)
        deadline = time.monotonic() + 3
        while time.monotonic() < deadline:
            if any(w.worker_id == context.worker_id for w in store.list_workers()):
                reappeared.append(True)
                return
            time.sleep(0.02)
        reappeared.append(False)

    _submit(store, "wait")
    _worker(store, registry, heartbeat_interval_seconds=0.05).run_loop(max_idle_polls=1)

    assert reappeared == [True]


def test_in_loop_maintenance_reclaims_and_sweeps(store: TaskStore) -> None:
    task = _submit(store)
    store.claim(worker_id="ghost")
    store.register_worker(worker_id="ghost", capabilities={"echo"})
    time.sleep(0.6)
    maintenance = MaintenanceSettings(
        interval_seconds=60,
        stuck_threshold_seconds=0.5,
        max_missed_heartbeats=1,
        promote_after_seconds=0,
    )
    worker = _worker(store, maintenance=maintenance)
    worker.heartbeat_interval_seconds = 0.5

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.reclaimed == 1
    assert summary.swept_workers == 1
    assert summary.succeeded == 1
    assert store.get_task(task.task_id).status == TaskStatus.COMPLETED
    assert store.list_workers() == []


def test_grace_period_overrun_is_logged(
    store: TaskStore,
    clock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    worker = _worker(store, clock=clock, shutdown_grace_seconds=60)
    store.register_worker(worker_id=worker.worker_id, capabilities={"echo"})
    worker.request_stop(reason="SIGTERM")
    worker._current_task_id = "task-in-flight"

    with caplog.at_level(logging.WARNING, logger="durable_tasks.queue.worker"):
        clock.advance(30)
        worker._beat_once()
        clock.advance(31)
        worker._beat_once()
        worker._beat_once()

    overruns = [
        record for record in caplog.records if "after shutdown request" in record.getMessage()
    ]
    assert len(overruns) == 1
    assert "task-in-flight" in overruns[0].getMessage()
    assert store.list_workers()[0].state.value == "draining"


def test_invalid_worker_settings_are_rejected(store: TaskStore) -> None:
    with pytest.raises(ValueError, match="batch_size"):
        _worker(store, batch_size=0)
    with pytest.raises(ValueError, match="poll intervals"):
        _worker(store, poll_interval_seconds=5, max_poll_interval_seconds=1)
