"""Runtime configuration for the task store, retry policy and workers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from durable_tasks.core.models import MAX_PRIORITY, MIN_PRIORITY

ENV_PREFIX = "DURABLE_TASKS_"
DEFAULT_HANDLER_MODULES = ("durable_tasks.handlers.builtin:REGISTRY",)


@dataclass(slots=True)
class QueueSettings:
    """Task store and submission settings."""

    busy_timeout_ms: int = 5_000
    default_max_retries: int = 3
    max_retries_by_type: dict[str, int] = field(default_factory=dict)
    handler_modules: tuple[str, ...] = DEFAULT_HANDLER_MODULES


@dataclass(slots=True)
class RetrySettings:
    """Exponential backoff with full jitter."""

    base_delay_seconds: float = 2.0
    multiplier: float = 2.0
    max_delay_seconds: float = 3_600.0
    unknown_max_retries: int = 1
    max_suggested_delay_seconds: float = 86_400.0


@dataclass(slots=True)
class BreakerSettings:
    """Per-dependency circuit breaker settings."""

    failure_threshold: int = 5
    recovery_timeout_seconds: float = 30.0


@dataclass(slots=True)
class WorkerSettings:
    """Claim loop cadence and shutdown behavior."""

    batch_size: int = 1
    poll_interval_seconds: float = 1.0
    max_poll_interval_seconds: float = 30.0
    heartbeat_interval_seconds: float = 10.0
    shutdown_grace_seconds: float = 60.0
    progress_min_interval_seconds: float = 1.0
    run_maintenance: bool = True
    maintenance_interval_seconds: float = 60.0


@dataclass(slots=True)
class LivenessSettings:
    """Stuck-task reclaim, dead-worker sweep and starvation control."""

    stuck_threshold_seconds: float = 1_800.0
    max_missed_heartbeats: int = 3
    promote_after_seconds: float = 600.0
    promote_step: int = 1
    promote_max_priority: int = MAX_PRIORITY


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".durable_tasks.db")
    queue: QueueSettings = field(default_factory=QueueSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    liveness: LivenessSettings = field(default_factory=LivenessSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("DURABLE_TASKS_DB_PATH", ".durable_tasks.db")),
            queue=QueueSettings(
                busy_timeout_ms=_env_int("BUSY_TIMEOUT_MS", 5_000),
                default_max_retries=_env_int("MAX_RETRIES", 3),
                max_retries_by_type=_collect_max_retries_overrides(),
                handler_modules=_collect_handler_modules(),
            ),
            retry=RetrySettings(
                base_delay_seconds=_env_float("RETRY_BASE_DELAY_SECONDS", 2.0),
                multiplier=_env_float("RETRY_MULTIPLIER", 2.0),
                max_delay_seconds=_env_float("RETRY_MAX_DELAY_SECONDS", 3_600.0),
                unknown_max_retries=_env_int("UNKNOWN_MAX_RETRIES", 1),
                max_suggested_delay_seconds=_env_float(
                    "RETRY_MAX_SUGGESTED_DELAY_SECONDS",
                    86_400.0,
                ),
            ),
            breaker=BreakerSettings(
                failure_threshold=_env_int("BREAKER_FAILURE_THRESHOLD", 5),
                recovery_timeout_seconds=_env_float("BREAKER_RECOVERY_TIMEOUT_SECONDS", 30.0),
            ),
            worker=WorkerSettings(
                batch_size=_env_int("WORKER_BATCH_SIZE", 1),
                poll_interval_seconds=_env_float("WORKER_POLL_INTERVAL_SECONDS", 1.0),
                max_poll_interval_seconds=_env_float("WORKER_MAX_POLL_INTERVAL_SECONDS", 30.0),
                heartbeat_interval_seconds=_env_float("HEARTBEAT_INTERVAL_SECONDS", 10.0),
                shutdown_grace_seconds=_env_float("SHUTDOWN_GRACE_SECONDS", 60.0),
                progress_min_interval_seconds=_env_float(
                    "PROGRESS_MIN_INTERVAL_SECONDS",
                    1.0,
                ),
                run_maintenance=_env_bool(f"{ENV_PREFIX}WORKER_RUN_MAINTENANCE", default=True),
                maintenance_interval_seconds=_env_float("MAINTENANCE_INTERVAL_SECONDS", 60.0),
            ),
            liveness=LivenessSettings(
                stuck_threshold_seconds=_env_float("STUCK_THRESHOLD_SECONDS", 1_800.0),
                max_missed_heartbeats=_env_int("MAX_MISSED_HEARTBEATS", 3),
                promote_after_seconds=_env_float("PROMOTE_AFTER_SECONDS", 600.0),
                promote_step=_env_int("PROMOTE_STEP", 1),
                promote_max_priority=_env_int("PROMOTE_MAX_PRIORITY", MAX_PRIORITY),
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error naming the offending variable."""

        if self.queue.busy_timeout_ms < 0:
            raise ValueError("DURABLE_TASKS_BUSY_TIMEOUT_MS must be >= 0.")
        if self.queue.default_max_retries < 0:
            raise ValueError("DURABLE_TASKS_MAX_RETRIES must be >= 0.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("DURABLE_TASKS_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.retry.multiplier < 1:
            raise ValueError("DURABLE_TASKS_RETRY_MULTIPLIER must be >= 1.")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ValueError(
                "DURABLE_TASKS_RETRY_MAX_DELAY_SECONDS must be >= "
                "DURABLE_TASKS_RETRY_BASE_DELAY_SECONDS.",
            )
        if self.retry.unknown_max_retries < 0:
            raise ValueError("DURABLE_TASKS_UNKNOWN_MAX_RETRIES must be >= 0.")
        if self.retry.max_suggested_delay_seconds < 0:
            raise ValueError("DURABLE_TASKS_RETRY_MAX_SUGGESTED_DELAY_SECONDS must be >= 0.")
        if self.breaker.failure_threshold < 1:
            raise ValueError("DURABLE_TASKS_BREAKER_FAILURE_THRESHOLD must be >= 1.")
        if self.breaker.recovery_timeout_seconds <= 0:
            raise ValueError("DURABLE_TASKS_BREAKER_RECOVERY_TIMEOUT_SECONDS must be > 0.")
        if self.worker.batch_size < 1:
            raise ValueError("DURABLE_TASKS_WORKER_BATCH_SIZE must be a positive integer.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("DURABLE_TASKS_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.max_poll_interval_seconds < self.worker.poll_interval_seconds:
            raise ValueError(
                "DURABLE_TASKS_WORKER_MAX_POLL_INTERVAL_SECONDS must be >= "
                "DURABLE_TASKS_WORKER_POLL_INTERVAL_SECONDS.",
            )
        if self.worker.heartbeat_interval_seconds <= 0:
            raise ValueError("DURABLE_TASKS_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.liveness.max_missed_heartbeats < 1:
            raise ValueError("DURABLE_TASKS_MAX_MISSED_HEARTBEATS must be >= 1.")
        if self.liveness.stuck_threshold_seconds <= self.worker.shutdown_grace_seconds:
            raise ValueError(
                "DURABLE_TASKS_STUCK_THRESHOLD_SECONDS must exceed "
                "DURABLE_TASKS_SHUTDOWN_GRACE_SECONDS.",
            )
        if self.liveness.promote_step < 1:
            raise ValueError("DURABLE_TASKS_PROMOTE_STEP must be >= 1.")
        if not MIN_PRIORITY <= self.liveness.promote_max_priority <= MAX_PRIORITY:
            raise ValueError(
                f"DURABLE_TASKS_PROMOTE_MAX_PRIORITY must be within "
                f"[{MIN_PRIORITY}, {MAX_PRIORITY}].",
            )
        for task_type, value in self.queue.max_retries_by_type.items():
            if value < 0:
                raise ValueError(
                    f"Per-type max retries override must be >= 0: {task_type!r} -> {value}",
                )


def _env_name(suffix: str) -> str:
    return f"{ENV_PREFIX}{suffix}"


def _env_int(suffix: str, default: int) -> int:
    name = _env_name(suffix)
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(suffix: str, default: float) -> float:
    name = _env_name(suffix)
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {raw!r}") from error


def _collect_handler_modules() -> tuple[str, ...]:
    raw = os.getenv(_env_name("HANDLERS"), "").strip()
    if not raw:
        return DEFAULT_HANDLER_MODULES
    values: list[str] = []
    for part in raw.split(","):
        token = part.strip()
        if token and token not in values:
            values.append(token)
    return tuple(values)


def _collect_max_retries_overrides() -> dict[str, int]:
    raw = os.getenv(_env_name("MAX_RETRIES_BY_TYPE"), "").strip()
    if not raw:
        return {}

    overrides: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid DURABLE_TASKS_MAX_RETRIES_BY_TYPE entry: "
                f"{token!r}. Expected format '<task_type>|<max_retries>'.",
            )
        task_type, value_raw = token.rsplit("|", 1)
        task_type = task_type.strip()
        value_raw = value_raw.strip()
        if not task_type:
            raise ValueError(
                f"Invalid DURABLE_TASKS_MAX_RETRIES_BY_TYPE entry: {token!r} (empty task type)",
            )
        try:
            overrides[task_type] = int(value_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid DURABLE_TASKS_MAX_RETRIES_BY_TYPE value for {task_type!r}: "
                f"{value_raw!r}",
            ) from error
    return overrides


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
