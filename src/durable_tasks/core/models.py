"""Domain models for the durable task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

MIN_PRIORITY = 0
MAX_PRIORITY = 9


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorCategory(str, Enum):
    """Normalized failure categories used by retry policy."""

    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"
    CODE_DEFECT = "code_defect"
    UNKNOWN = "unknown"


class WorkerState(str, Enum):
    """Registry row state of a worker process."""

    ACTIVE = "active"
    DRAINING = "draining"


class FailureResolution(str, Enum):
    """What happened to a task after a failed attempt."""

    RESCHEDULED = "rescheduled"
    DEAD_LETTERED = "dead_lettered"
    LOST = "lost"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for submitting a task."""

    task_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    max_retries: int | None = None
    run_after: datetime | None = None
    idempotency_key: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task snapshot for workers and operators."""

    task_id: str
    task_type: str
    payload: dict[str, Any]
    priority: int
    status: TaskStatus
    retry_count: int
    max_retries: int
    last_error: str | None
    last_error_category: ErrorCategory | None
    scheduled_at: datetime
    claimed_by: str | None
    claimed_at: datetime | None
    idempotency_key: str | None
    progress_percent: int | None
    progress_message: str | None
    result_summary: str | None
    completed_at: datetime | None
    replay_of: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class DeadLetterView:
    """Immutable archive record of a permanently failed task."""

    dead_letter_id: str
    task_id: str
    task_type: str
    payload: dict[str, Any]
    priority: int
    final_error: str
    error_category: ErrorCategory
    retry_count: int
    max_retries: int
    worker_id: str | None
    task_created_at: datetime
    failed_at: datetime
    replay_of: str | None = None


@dataclass(slots=True)
class DeadLetterFilter:
    """Query filter for dead-letter listing."""

    task_type: str | None = None
    error_category: ErrorCategory | None = None
    since: datetime | None = None
    limit: int = 50


@dataclass(slots=True)
class WorkerView:
    """Worker registry row."""

    worker_id: str
    capabilities: frozenset[str]
    state: WorkerState
    hostname: str | None
    pid: int | None
    started_at: datetime
    last_heartbeat: datetime


@dataclass(slots=True)
class QueueCounts:
    """Per-status task counters plus dead-letter volume."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    dead_letters: int = 0
    workers: int = 0


@dataclass(slots=True)
class FailOutcome:
    """Result of resolving one failed attempt."""

    resolution: FailureResolution
    category: ErrorCategory | None
    delay_seconds: float | None = None
    dead_letter_id: str | None = None
    reason: str = ""
