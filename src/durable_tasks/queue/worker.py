"""Queue worker: claim, execute and resolve tasks until told to stop."""

from __future__ import annotations

import logging
import os
import signal
import socket
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import timedelta

from durable_tasks.core.breaker import BreakerBoard, run_with_timeout
from durable_tasks.core.errors import (
    BreakerOpenError,
    HandlerNotFoundError,
    StoreUnavailableError,
    TaskCancelledError,
)
from durable_tasks.core.models import MAX_PRIORITY, FailureResolution, TaskView
from durable_tasks.core.registry import HandlerRegistry, HandlerSpec, TaskContext
from durable_tasks.queue.repository import TaskStore
from durable_tasks.queue.services import TaskQueueService, describe_error, retry_store_operation

logger = logging.getLogger(__name__)

MAX_RESULT_SUMMARY_CHARS = 2000


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    released: int = 0
    lost: int = 0
    idle_polls: int = 0
    reclaimed: int = 0
    promoted: int = 0
    swept_workers: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


@dataclass(slots=True)
class MaintenanceSettings:
    """In-loop liveness and starvation sweeps; an interval of 0 disables them."""

    interval_seconds: float = 60.0
    stuck_threshold_seconds: float = 1800.0
    max_missed_heartbeats: int = 3
    promote_after_seconds: float = 600.0
    promote_step: int = 1
    promote_max_priority: int = MAX_PRIORITY


class TaskWorker:
    """Consumes queued tasks and executes them via registered handlers."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        registry: HandlerRegistry,
        worker_id: str,
        service: TaskQueueService | None = None,
        breakers: BreakerBoard | None = None,
        batch_size: int = 1,
        poll_interval_seconds: float = 1.0,
        max_poll_interval_seconds: float = 30.0,
        heartbeat_interval_seconds: float = 10.0,
        progress_min_interval_seconds: float = 1.0,
        shutdown_grace_seconds: float = 60.0,
        maintenance: MaintenanceSettings | None = None,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if poll_interval_seconds < 0 or max_poll_interval_seconds < poll_interval_seconds:
            raise ValueError("poll intervals must satisfy 0 <= min <= max")
        self.store = store
        self.registry = registry
        self.worker_id = worker_id
        self.service = service or TaskQueueService(store=store)
        self.breakers = breakers or BreakerBoard()
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_interval_seconds = max_poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.progress_min_interval_seconds = progress_min_interval_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.maintenance = maintenance or MaintenanceSettings(interval_seconds=0)
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        self._current_poll_seconds = poll_interval_seconds
        self._last_maintenance_at: float | None = None
        self._draining_marked = False
        self._stop_requested_at: float | None = None
        self._grace_warned = False
        self._current_task_id: str | None = None

    @property
    def current_poll_seconds(self) -> float:
        return self._current_poll_seconds

    def run_once(self) -> WorkerRunSummary:
        """Claim one batch and resolve every task in it."""

        summary = WorkerRunSummary()
        if self.stop_event.is_set():
            summary.idle_polls = 1
            return summary

        tasks = retry_store_operation(
            lambda: self.store.claim(
                worker_id=self.worker_id,
                capabilities=self.registry.capabilities(),
                batch_size=self.batch_size,
            ),
        )
        if not tasks:
            summary.idle_polls = 1
            return summary

        started = 0
        try:
            for index, task in enumerate(tasks):
                if self.stop_event.is_set():
                    for unstarted in tasks[index:]:
                        self._release(unstarted, reason="worker_draining", summary=summary)
                    break
                started = index + 1
                summary.processed += 1
                self._current_task_id = task.task_id
                try:
                    self._execute(task, summary=summary)
                finally:
                    self._current_task_id = None
        except StoreUnavailableError:
            self._abandon_unstarted(tasks[started:])
            raise
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, ``max_tasks`` processed or ``max_idle_polls`` empty polls in a row.

        Registers the worker, keeps its heartbeat alive in a background
        thread and deregisters on exit. SIGINT/SIGTERM switch the worker to
        draining: no new claims, the in-flight task finishes.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        self._register()
        try:
            with self._signal_handlers(), self._heartbeat():
                while not self.stop_event.is_set():
                    if max_tasks is not None and aggregate.processed >= max_tasks:
                        break
                    self._maybe_run_maintenance(aggregate)

                    try:
                        summary = self.run_once()
                    except StoreUnavailableError as error:
                        logger.warning("Claim failed, backing off: %s", error)
                        self._sleep_with_stop(self._next_idle_poll())
                        continue
                    aggregate.add(summary)

                    if summary.processed == 0 and summary.released == 0:
                        consecutive_idle += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                        self._sleep_with_stop(self._next_idle_poll())
                        continue

                    consecutive_idle = 0
                    self._current_poll_seconds = self.poll_interval_seconds
        finally:
            self._deregister()
        return aggregate

    def request_stop(self, *, reason: str = "requested") -> None:
        """Switch to draining: stop claiming and let the in-flight task finish."""

        if self.stop_event.is_set():
            return
        self._stop_requested_at = self._clock()
        self.stop_event.set()
        logger.info("Worker %s draining (%s).", self.worker_id, reason)

    def _execute(self, task: TaskView, *, summary: WorkerRunSummary) -> None:
        try:
            entry = self.registry.resolve(task.task_type)
        except HandlerNotFoundError as error:
            self._record_failure(task, error=error, summary=summary)
            return

        context = TaskContext(
            task=task,
            worker_id=self.worker_id,
            stop_event=self.stop_event,
            progress_sink=self._persist_progress,
            progress_min_interval_seconds=self.progress_min_interval_seconds,
        )
        try:
            result = self._invoke(entry, task=task, context=context)
        except BreakerOpenError as error:
            self._release(
                task,
                reason=f"breaker_open:{error.dependency}",
                summary=summary,
                delay_seconds=error.retry_after_seconds,
            )
            return
        except TaskCancelledError:
            self._release(task, reason="cancelled_by_shutdown", summary=summary)
            return
        except Exception as error:  # noqa: BLE001
            self._record_failure(task, error=error, summary=summary)
            return

        completed = retry_store_operation(
            lambda: self.store.complete(
                task_id=task.task_id,
                worker_id=self.worker_id,
                result_summary=_summarize_result(result),
            ),
        )
        if completed:
            summary.succeeded += 1
            return
        summary.lost += 1
        logger.warning(
            "Task %s finished but its claim was lost before completion was recorded.",
            task.task_id,
        )

    def _invoke(self, entry: HandlerSpec, *, task: TaskView, context: TaskContext) -> object:
        dependency = entry.dependency_for(task)
        if dependency is None:
            return run_with_timeout(
                lambda: entry.handler(context),
                timeout_seconds=entry.timeout_seconds,
                on_timeout=context.attempt_cancel.set,
            )
        return self.breakers.get(dependency).execute(
            lambda: entry.handler(context),
            timeout_seconds=entry.timeout_seconds,
            on_timeout=context.attempt_cancel.set,
        )

    def _record_failure(
        self,
        task: TaskView,
        *,
        error: BaseException,
        summary: WorkerRunSummary,
    ) -> None:
        logger.info("Task %s failed: %s", task.task_id, describe_error(error))
        outcome = retry_store_operation(
            lambda: self.service.fail(task=task, worker_id=self.worker_id, error=error),
        )
        if outcome.resolution == FailureResolution.RESCHEDULED:
            summary.retried += 1
        elif outcome.resolution == FailureResolution.DEAD_LETTERED:
            summary.failed += 1
        else:
            summary.lost += 1

    def _release(
        self,
        task: TaskView,
        *,
        reason: str,
        summary: WorkerRunSummary,
        delay_seconds: float = 0.0,
    ) -> None:
        released = retry_store_operation(
            lambda: self.store.release(
                task_id=task.task_id,
                worker_id=self.worker_id,
                delay_seconds=delay_seconds,
                reason=reason,
            ),
        )
        if released:
            summary.released += 1
        else:
            summary.lost += 1

    def _abandon_unstarted(self, tasks: list[TaskView]) -> None:
        # Best effort: whatever stays claimed here waits for the stuck sweep.
        for task in tasks:
            try:
                self.store.release(
                    task_id=task.task_id,
                    worker_id=self.worker_id,
                    reason="store_unavailable",
                )
            except StoreUnavailableError as error:
                logger.warning("Could not release task %s: %s", task.task_id, error)

    def _persist_progress(self, *, task_id: str, percent: int, message: str | None) -> None:
        try:
            self.store.report_progress(
                task_id=task_id,
                percent=percent,
                message=message,
                worker_id=self.worker_id,
            )
        except StoreUnavailableError as error:
            logger.debug("Progress update skipped for task %s: %s", task_id, error)

    def _next_idle_poll(self) -> float:
        current = self._current_poll_seconds
        self._current_poll_seconds = min(
            self.max_poll_interval_seconds,
            max(current * 2, self.poll_interval_seconds) if current > 0 else 0.0,
        )
        return current

    def _maybe_run_maintenance(self, summary: WorkerRunSummary) -> None:
        settings = self.maintenance
        if settings.interval_seconds <= 0:
            return
        now = self._clock()
        if (
            self._last_maintenance_at is not None
            and now - self._last_maintenance_at < settings.interval_seconds
        ):
            return
        self._last_maintenance_at = now
        try:
            summary.reclaimed += self.store.reclaim_stuck(
                stuck_threshold=timedelta(seconds=settings.stuck_threshold_seconds),
            )
            summary.swept_workers += len(
                self.store.sweep_dead_workers(
                    heartbeat_interval=timedelta(seconds=self.heartbeat_interval_seconds),
                    max_missed_intervals=settings.max_missed_heartbeats,
                ),
            )
            if settings.promote_after_seconds > 0:
                summary.promoted += self.store.promote_aged(
                    older_than=timedelta(seconds=settings.promote_after_seconds),
                    step=settings.promote_step,
                    max_priority=settings.promote_max_priority,
                )
        except StoreUnavailableError as error:
            logger.warning("Maintenance sweep skipped: %s", error)

    def _register(self) -> None:
        retry_store_operation(
            lambda: self.store.register_worker(
                worker_id=self.worker_id,
                capabilities=self.registry.capabilities(),
                hostname=socket.gethostname(),
                pid=os.getpid(),
            ),
        )
        logger.info(
            "Worker %s registered (capabilities=%s).",
            self.worker_id,
            ",".join(sorted(self.registry.capabilities())) or "-",
        )

    def _deregister(self) -> None:
        try:
            self.store.deregister_worker(worker_id=self.worker_id)
        except StoreUnavailableError as error:
            logger.warning("Worker %s deregistration failed: %s", self.worker_id, error)
            return
        logger.info("Worker %s stopped.", self.worker_id)

    def _beat_once(self) -> None:
        self._check_grace_period()
        try:
            if self.stop_event.is_set() and not self._draining_marked:
                self._draining_marked = self.store.mark_draining(worker_id=self.worker_id)
            alive = self.store.heartbeat(worker_id=self.worker_id)
        except StoreUnavailableError as error:
            logger.warning("Heartbeat failed for worker %s: %s", self.worker_id, error)
            return
        if not alive:
            logger.warning("Worker %s was swept from the registry; re-registering.", self.worker_id)
            self._register()

    def _check_grace_period(self) -> None:
        if not self.stop_event.is_set() or self._grace_warned:
            return
        now = self._clock()
        if self._stop_requested_at is None:
            self._stop_requested_at = now
        task_id = self._current_task_id
        if task_id is None or now - self._stop_requested_at <= self.shutdown_grace_seconds:
            return
        self._grace_warned = True
        logger.warning(
            "Task %s still running %.0fs after shutdown request; if the process is "
            "terminated the liveness sweep will reclaim it.",
            task_id,
            now - self._stop_requested_at,
        )

    @contextmanager
    def _heartbeat(self) -> Iterator[None]:
        if self.heartbeat_interval_seconds <= 0:
            yield
            return
        finished = threading.Event()

        def _beat() -> None:
            while not finished.wait(self.heartbeat_interval_seconds):
                try:
                    self._beat_once()
                except StoreUnavailableError as error:
                    logger.warning("Re-registration failed for worker %s: %s", self.worker_id, error)

        thread = threading.Thread(target=_beat, name=f"heartbeat-{self.worker_id}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            finished.set()
            thread.join(timeout=self.heartbeat_interval_seconds)

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self.stop_event.wait(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _summarize_result(result: object) -> str | None:
    if result is None:
        return None
    text = str(result)
    if len(text) <= MAX_RESULT_SUMMARY_CHARS:
        return text
    return text[: MAX_RESULT_SUMMARY_CHARS - 3] + "..."
