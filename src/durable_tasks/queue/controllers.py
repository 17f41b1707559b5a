"""Controllers for task queue CLI commands."""

from __future__ import annotations

import json
import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

from durable_tasks.config import Settings
from durable_tasks.core.breaker import BreakerBoard
from durable_tasks.core.errors import DeadLetterNotFoundError
from durable_tasks.core.models import (
    DeadLetterFilter,
    DeadLetterView,
    ErrorCategory,
    TaskCreate,
    TaskEventView,
    TaskStatus,
)
from durable_tasks.core.registry import load_registry
from durable_tasks.core.retry import RetryPolicy
from durable_tasks.queue.repository import TaskStore
from durable_tasks.queue.services import TaskQueueService
from durable_tasks.queue.worker import MaintenanceSettings, TaskWorker


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for task submission."""

    db_path: Path | None
    task_type: str
    payload_json: str
    priority: int
    max_retries: int | None
    delay_seconds: float
    idempotency_key: str | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    worker_id: str | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None
    handler_modules: tuple[str, ...] = ()


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    task_type: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class StatsCommand:
    """CLI input for queue counters."""

    db_path: Path | None


@dataclass(slots=True)
class ReclaimCommand:
    """CLI input for a one-off liveness sweep."""

    db_path: Path | None
    stuck_threshold_seconds: float | None


@dataclass(slots=True)
class PromoteCommand:
    """CLI input for a one-off age-based priority promotion."""

    db_path: Path | None
    older_than_seconds: float | None
    step: int | None
    max_priority: int | None


@dataclass(slots=True)
class WorkersCommand:
    """CLI input for worker registry listing and sweeping."""

    db_path: Path | None


@dataclass(slots=True)
class DeadLetterListCommand:
    """CLI input for dead-letter listing."""

    db_path: Path | None
    task_type: str | None
    category: str | None
    hours: int | None
    limit: int


@dataclass(slots=True)
class DeadLetterCommand:
    """CLI input for dead-letter show/replay."""

    db_path: Path | None
    dead_letter_id: str
    priority: int | None = None


class TaskQueueCliController:
    """Coordinates submission, worker, inspection and dead-letter CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = _parse_payload(command.payload_json)
        run_after = None
        if command.delay_seconds > 0:
            run_after = datetime.now(tz=UTC) + timedelta(seconds=command.delay_seconds)
        with _store(settings) as store:
            task = store.submit(
                TaskCreate(
                    task_type=command.task_type,
                    payload=payload,
                    priority=command.priority,
                    max_retries=command.max_retries,
                    run_after=run_after,
                    idempotency_key=command.idempotency_key,
                ),
            )
        return [
            "Task submitted: "
            f"task_id={task.task_id} type={task.task_type} status={task.status.value} "
            f"priority={task.priority} max_retries={task.max_retries}",
            f"Scheduled at: {task.scheduled_at.isoformat()}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        registry = load_registry(command.handler_modules or settings.queue.handler_modules)
        worker_id = command.worker_id or _default_worker_id()
        maintenance = MaintenanceSettings(interval_seconds=0)
        if settings.worker.run_maintenance:
            maintenance = MaintenanceSettings(
                interval_seconds=settings.worker.maintenance_interval_seconds,
                stuck_threshold_seconds=settings.liveness.stuck_threshold_seconds,
                max_missed_heartbeats=settings.liveness.max_missed_heartbeats,
                promote_after_seconds=settings.liveness.promote_after_seconds,
                promote_step=settings.liveness.promote_step,
                promote_max_priority=settings.liveness.promote_max_priority,
            )
        with _store(settings) as store:
            worker = TaskWorker(
                store=store,
                registry=registry,
                worker_id=worker_id,
                service=TaskQueueService(store=store, policy=_retry_policy(settings)),
                breakers=BreakerBoard(
                    failure_threshold=settings.breaker.failure_threshold,
                    recovery_timeout_seconds=settings.breaker.recovery_timeout_seconds,
                ),
                batch_size=settings.worker.batch_size,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                max_poll_interval_seconds=settings.worker.max_poll_interval_seconds,
                heartbeat_interval_seconds=settings.worker.heartbeat_interval_seconds,
                progress_min_interval_seconds=settings.worker.progress_min_interval_seconds,
                shutdown_grace_seconds=settings.worker.shutdown_grace_seconds,
                maintenance=maintenance,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            f"Worker {worker_id} summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"released={summary.released} lost={summary.lost} "
            f"idle_polls={summary.idle_polls}",
            f"Maintenance: reclaimed={summary.reclaimed} promoted={summary.promoted} "
            f"swept_workers={summary.swept_workers}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _store(settings) as store:
            tasks = store.list_tasks(
                status=status_filter,
                task_type=command.task_type,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value} "
                f"priority={task.priority} retries={task.retry_count}/{task.max_retries} "
                f"scheduled_at={task.scheduled_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            details = store.get_task_details(task_id=command.task_id)
            events = (
                store.list_task_events(task_id=command.task_id) if details is None else None
            )
        if details is None:
            if not events:
                return [f"Task not found: {command.task_id}"]
            lines = [
                f"Task: {command.task_id} (no longer active)",
                f"Events: {len(events)}",
            ]
            lines.extend(_event_line(event) for event in events)
            return lines

        task = details.task
        progress = (
            f"{task.progress_percent}% {task.progress_message or ''}".rstrip()
            if task.progress_percent is not None
            else "-"
        )
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Scheduled at: {task.scheduled_at.isoformat()}",
            f"Claimed by: {task.claimed_by or '-'}",
            f"Progress: {progress}",
            f"Last error category: "
            f"{task.last_error_category.value if task.last_error_category else '-'}",
            f"Last error: {task.last_error or '-'}",
            f"Result: {task.result_summary or '-'}",
            f"Replay of: {task.replay_of or '-'}",
            f"Payload: {json.dumps(task.payload, ensure_ascii=False, sort_keys=True)}",
            f"Events: {len(details.events)}",
        ]
        lines.extend(_event_line(event) for event in details.events)
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            counts = store.counts()
        return [
            "Queue: "
            f"pending={counts.pending} processing={counts.processing} "
            f"completed={counts.completed} dead_letters={counts.dead_letters} "
            f"workers={counts.workers}",
        ]

    def reclaim(self, command: ReclaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        threshold = command.stuck_threshold_seconds or settings.liveness.stuck_threshold_seconds
        with _store(settings) as store:
            reclaimed = store.reclaim_stuck(stuck_threshold=timedelta(seconds=threshold))
        return [f"Reclaimed stuck tasks: {reclaimed} (threshold={threshold:.0f}s)"]

    def promote(self, command: PromoteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        older_than = (
            command.older_than_seconds
            if command.older_than_seconds is not None
            else settings.liveness.promote_after_seconds
        )
        step = command.step or settings.liveness.promote_step
        max_priority = (
            command.max_priority
            if command.max_priority is not None
            else settings.liveness.promote_max_priority
        )
        with _store(settings) as store:
            promoted = store.promote_aged(
                older_than=timedelta(seconds=older_than),
                step=step,
                max_priority=max_priority,
            )
        return [
            f"Promoted tasks: {promoted} "
            f"(older_than={older_than:.0f}s step={step} max_priority={max_priority})",
        ]

    def list_workers(self, command: WorkersCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            workers = store.list_workers()
        lines = [f"Workers: {len(workers)}"]
        for worker in workers:
            lines.append(
                f"  {worker.worker_id} state={worker.state.value} "
                f"host={worker.hostname or '-'} pid={worker.pid or '-'} "
                f"last_heartbeat={worker.last_heartbeat.isoformat()} "
                f"capabilities={','.join(sorted(worker.capabilities)) or '-'}",
            )
        return lines

    def sweep_workers(self, command: WorkersCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            removed = store.sweep_dead_workers(
                heartbeat_interval=timedelta(seconds=settings.worker.heartbeat_interval_seconds),
                max_missed_intervals=settings.liveness.max_missed_heartbeats,
            )
        lines = [f"Removed dead workers: {len(removed)}"]
        lines.extend(f"  {worker_id}" for worker_id in removed)
        return lines

    def list_dead_letters(self, command: DeadLetterListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        since = (
            datetime.now(tz=UTC) - timedelta(hours=command.hours)
            if command.hours is not None
            else None
        )
        with _store(settings) as store:
            entries = store.list_dead_letters(
                DeadLetterFilter(
                    task_type=command.task_type,
                    error_category=ErrorCategory(command.category) if command.category else None,
                    since=since,
                    limit=command.limit,
                ),
            )
        lines = [f"Dead letters: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.dead_letter_id} task_id={entry.task_id} type={entry.task_type} "
                f"category={entry.error_category.value} retries={entry.retry_count} "
                f"failed_at={entry.failed_at.isoformat()}",
            )
        return lines

    def show_dead_letter(self, command: DeadLetterCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            entry = store.get_dead_letter(command.dead_letter_id)
        if entry is None:
            raise DeadLetterNotFoundError(f"Dead letter not found: {command.dead_letter_id}")
        return _dead_letter_lines(entry)

    def replay_dead_letter(self, command: DeadLetterCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            task = store.replay(command.dead_letter_id, priority=command.priority)
        return [
            f"Dead letter replayed: dead_letter_id={command.dead_letter_id} "
            f"new_task_id={task.task_id} type={task.task_type} priority={task.priority}",
        ]


def _dead_letter_lines(entry: DeadLetterView) -> list[str]:
    return [
        f"Dead letter: {entry.dead_letter_id}",
        f"Task: {entry.task_id}",
        f"Type: {entry.task_type}",
        f"Category: {entry.error_category.value}",
        f"Retries: {entry.retry_count}/{entry.max_retries}",
        f"Worker: {entry.worker_id or '-'}",
        f"Created at: {entry.task_created_at.isoformat()}",
        f"Failed at: {entry.failed_at.isoformat()}",
        f"Replay of: {entry.replay_of or '-'}",
        f"Error: {entry.final_error}",
        f"Payload: {json.dumps(entry.payload, ensure_ascii=False, sort_keys=True)}",
    ]


def _event_line(event: TaskEventView) -> str:
    return (
        f"  {event.created_at.isoformat()} {event.event_type} "
        f"{event.status_from.value if event.status_from else '-'} -> "
        f"{event.status_to.value if event.status_to else '-'}"
    )


def _parse_payload(raw: str) -> dict[str, object]:
    try:
        payload = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as error:
        raise ValueError(f"Payload is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError("Payload must be a JSON object.")
    return payload


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.lower())


def _retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        base_delay_seconds=settings.retry.base_delay_seconds,
        multiplier=settings.retry.multiplier,
        max_delay_seconds=settings.retry.max_delay_seconds,
        unknown_max_retries=settings.retry.unknown_max_retries,
        max_suggested_delay_seconds=settings.retry.max_suggested_delay_seconds,
    )


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    store = TaskStore(
        db_path=settings.db_path,
        busy_timeout_ms=settings.queue.busy_timeout_ms,
        default_max_retries=settings.queue.default_max_retries,
        max_retries_by_type=settings.queue.max_retries_by_type,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
