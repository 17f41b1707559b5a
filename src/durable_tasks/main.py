"""CLI entrypoint for durable-tasks."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from durable_tasks import __version__
from durable_tasks.core.models import MAX_PRIORITY, MIN_PRIORITY, ErrorCategory, TaskStatus
from durable_tasks.queue.controllers import (
    DeadLetterCommand,
    DeadLetterListCommand,
    InspectTaskCommand,
    ListTasksCommand,
    PromoteCommand,
    ReclaimCommand,
    StatsCommand,
    SubmitCommand,
    TaskQueueCliController,
    WorkerCommand,
    WorkersCommand,
)

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = TaskQueueCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="durable-tasks")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity.",
)
def durable_tasks(log_level: str) -> None:
    """Durable background task queue CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@durable_tasks.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_type")
@click.option(
    "--payload",
    "payload_json",
    default="{}",
    show_default=True,
    help="Task payload as a JSON object.",
)
@click.option(
    "--priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=0,
    show_default=True,
    help="Higher number is claimed first.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0, max=100),
    default=None,
    help="Retry budget; defaults to the per-type or global setting.",
)
@click.option(
    "--delay-seconds",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
    help="Do not run before this many seconds from now.",
)
@click.option(
    "--idempotency-key",
    default=None,
    help="Submitting twice with the same key returns the first task.",
)
def submit(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    payload_json: str,
    priority: int,
    max_retries: int | None,
    delay_seconds: float,
    idempotency_key: str | None,
) -> None:
    """Submit a task to the queue."""

    _run(
        lambda: QUEUE_CONTROLLER.submit(
            SubmitCommand(
                db_path=db_path,
                task_type=task_type,
                payload_json=payload_json,
                priority=priority,
                max_retries=max_retries,
                delay_seconds=delay_seconds,
                idempotency_key=idempotency_key,
            ),
        ),
    )


@durable_tasks.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--worker-id", default=None, help="Worker id; generated when omitted.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one claim-execute cycle or loop until stopped.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls (runs forever when omitted).",
)
@click.option(
    "--handlers",
    "handler_modules",
    multiple=True,
    help="Handler registry reference '<module>:<attribute>'. Can be repeated.",
)
def worker(  # noqa: PLR0913
    db_path: Path | None,
    worker_id: str | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    handler_modules: tuple[str, ...],
) -> None:
    """Run a task worker; SIGINT/SIGTERM drain it gracefully."""

    _run(
        lambda: QUEUE_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                worker_id=worker_id,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                handler_modules=handler_modules,
            ),
        ),
    )


@durable_tasks.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(
        [TaskStatus.PENDING.value, TaskStatus.PROCESSING.value, TaskStatus.COMPLETED.value],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option("--task-type", default=None, help="Optional task type filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks(db_path: Path | None, status: str | None, task_type: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _run(
        lambda: QUEUE_CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, status=status, task_type=task_type, limit=limit),
        ),
    )


@durable_tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def inspect(db_path: Path | None, task_id: str) -> None:
    """Show task details and its event history."""

    _run(
        lambda: QUEUE_CONTROLLER.inspect_task(
            InspectTaskCommand(db_path=db_path, task_id=task_id),
        ),
    )


@durable_tasks.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stats(db_path: Path | None) -> None:
    """Show task counts per status plus dead letters and workers."""

    _run(lambda: QUEUE_CONTROLLER.stats(StatsCommand(db_path=db_path)))


@durable_tasks.command("reclaim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--stuck-threshold-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Processing age after which a task is presumed orphaned.",
)
def reclaim(db_path: Path | None, stuck_threshold_seconds: float | None) -> None:
    """Return stuck processing tasks to the queue."""

    _run(
        lambda: QUEUE_CONTROLLER.reclaim(
            ReclaimCommand(db_path=db_path, stuck_threshold_seconds=stuck_threshold_seconds),
        ),
    )


@durable_tasks.command("promote")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Minimum wait before a pending task is promoted.",
)
@click.option("--step", type=click.IntRange(min=1), default=None, help="Priority increment.")
@click.option(
    "--max-priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=None,
    help="Promotion cap.",
)
def promote(
    db_path: Path | None,
    older_than_seconds: float | None,
    step: int | None,
    max_priority: int | None,
) -> None:
    """Raise priority of long-waiting pending tasks."""

    _run(
        lambda: QUEUE_CONTROLLER.promote(
            PromoteCommand(
                db_path=db_path,
                older_than_seconds=older_than_seconds,
                step=step,
                max_priority=max_priority,
            ),
        ),
    )


@durable_tasks.group()
def workers() -> None:
    """Worker registry commands."""


@workers.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def workers_list(db_path: Path | None) -> None:
    """List registered workers."""

    _run(lambda: QUEUE_CONTROLLER.list_workers(WorkersCommand(db_path=db_path)))


@workers.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def workers_sweep(db_path: Path | None) -> None:
    """Remove workers that missed too many heartbeats."""

    _run(lambda: QUEUE_CONTROLLER.sweep_workers(WorkersCommand(db_path=db_path)))


@durable_tasks.group()
def dlq() -> None:
    """Dead-letter commands."""


@dlq.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-type", default=None, help="Optional task type filter.")
@click.option(
    "--category",
    type=click.Choice([category.value for category in ErrorCategory], case_sensitive=False),
    default=None,
    help="Optional error category filter.",
)
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=None,
    help="Only entries that failed within this many hours.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of entries to print.",
)
def dlq_list(
    db_path: Path | None,
    task_type: str | None,
    category: str | None,
    hours: int | None,
    limit: int,
) -> None:
    """List dead-letter entries, newest first."""

    _run(
        lambda: QUEUE_CONTROLLER.list_dead_letters(
            DeadLetterListCommand(
                db_path=db_path,
                task_type=task_type,
                category=category.lower() if category is not None else None,
                hours=hours,
                limit=limit,
            ),
        ),
    )


@dlq.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("dead_letter_id")
def dlq_show(db_path: Path | None, dead_letter_id: str) -> None:
    """Show one dead-letter entry."""

    _run(
        lambda: QUEUE_CONTROLLER.show_dead_letter(
            DeadLetterCommand(db_path=db_path, dead_letter_id=dead_letter_id),
        ),
    )


@dlq.command("replay")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=None,
    help="Priority of the new task; defaults to the original one.",
)
@click.argument("dead_letter_id")
def dlq_replay(db_path: Path | None, priority: int | None, dead_letter_id: str) -> None:
    """Re-submit a dead-lettered task as a fresh pending task."""

    _run(
        lambda: QUEUE_CONTROLLER.replay_dead_letter(
            DeadLetterCommand(db_path=db_path, dead_letter_id=dead_letter_id, priority=priority),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (ValueError, LookupError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    durable_tasks()
