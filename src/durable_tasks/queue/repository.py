"""Persistent task store: claim protocol, lifecycle transitions, dead letters."""

from __future__ import annotations

import json
import math
import logging
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select

from durable_tasks.core.errors import DeadLetterNotFoundError, StoreUnavailableError
from durable_tasks.core.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    DeadLetterFilter,
    DeadLetterView,
    ErrorCategory,
    QueueCounts,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
    WorkerState,
    WorkerView,
)
from durable_tasks.storage.alembic_runner import upgrade_head
from durable_tasks.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from durable_tasks.storage.sqlmodel_models import DeadLetterRow, TaskEventRow, TaskRow, WorkerRow

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
MAX_ERROR_CHARS = 4000
MAX_SCHEDULE_DELAY_SECONDS = 366 * 24 * 3600.0


class TaskStore:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every mutation is a conditional UPDATE/DELETE whose row count tells the
    caller whether it won; losing a race returns ``False``/``None`` instead
    of raising. Database-level failures surface as
    :class:`StoreUnavailableError` so callers can retry the whole operation.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        max_retries_by_type: Mapping[str, int] | None = None,
    ) -> None:
        self.db_path = db_path
        self.default_max_retries = default_max_retries
        self.max_retries_by_type = dict(max_retries_by_type or {})
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # -- producer side ---------------------------------------------------------

    def submit(self, payload: TaskCreate) -> TaskView:
        """Create a pending task, or return the existing one for a known idempotency key."""

        task_type = payload.task_type.strip()
        if not task_type:
            raise ValueError("task_type must be a non-empty string")
        if not MIN_PRIORITY <= payload.priority <= MAX_PRIORITY:
            raise ValueError(
                f"priority must be within [{MIN_PRIORITY}, {MAX_PRIORITY}], got {payload.priority}",
            )
        max_retries = self._resolve_max_retries(task_type, payload.max_retries)

        if payload.idempotency_key is not None:
            existing = self._find_by_idempotency_key(payload.idempotency_key)
            if existing is not None:
                return existing

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with self._session() as session:
            row = TaskRow(
                task_id=task_id,
                task_type=task_type,
                payload_json=_dump_payload(payload.payload),
                priority=payload.priority,
                status=TaskStatus.PENDING.value,
                retry_count=0,
                max_retries=max_retries,
                scheduled_at=to_db_datetime(payload.run_after or now),
                idempotency_key=payload.idempotency_key,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "task_type": task_type,
                    "priority": payload.priority,
                    "max_retries": max_retries,
                },
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if payload.idempotency_key is None:
                    raise
                existing = self._find_by_idempotency_key(payload.idempotency_key)
                if existing is None:
                    raise
                return existing
            session.refresh(row)
            return _to_task_view(row)

    def _resolve_max_retries(self, task_type: str, explicit: int | None) -> int:
        value = explicit
        if value is None:
            value = self.max_retries_by_type.get(task_type, self.default_max_retries)
        if value < 0:
            raise ValueError(f"max_retries must be >= 0, got {value}")
        return value

    def _find_by_idempotency_key(self, key: str) -> TaskView | None:
        with self._session() as session:
            row = session.exec(
                select(TaskRow).where(TaskRow.idempotency_key == key),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    # -- claim protocol --------------------------------------------------------

    def claim(
        self,
        *,
        worker_id: str,
        capabilities: Iterable[str] | None = None,
        batch_size: int = 1,
        now: datetime | None = None,
    ) -> list[TaskView]:
        """Atomically claim up to ``batch_size`` eligible tasks for ``worker_id``.

        Eligible means pending with ``scheduled_at <= now``; order is priority
        descending, then oldest ``scheduled_at`` first. A candidate another
        claimer already took is skipped, never waited on. Returns an empty
        list when nothing is eligible.
        """

        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        task_types = sorted(set(capabilities)) if capabilities is not None else None
        if task_types is not None and not task_types:
            return []

        db_now = to_db_datetime(now or utc_now())
        base = select(TaskRow).where(
            TaskRow.status == TaskStatus.PENDING.value,
            TaskRow.scheduled_at <= db_now,
        )
        if task_types is not None:
            base = base.where(col(TaskRow.task_type).in_(task_types))
        base = base.order_by(
            col(TaskRow.priority).desc(),
            col(TaskRow.scheduled_at).asc(),
            col(TaskRow.created_at).asc(),
            col(TaskRow.task_id).asc(),
        )

        claimed_ids: list[str] = []
        with self._session() as session:
            attempted: set[str] = set()
            while len(claimed_ids) < batch_size:
                statement = base
                if attempted:
                    statement = statement.where(col(TaskRow.task_id).not_in(attempted))
                candidates = session.exec(
                    statement.limit(batch_size - len(claimed_ids)).with_for_update(
                        skip_locked=True,
                    ),
                ).all()
                if not candidates:
                    break
                for candidate in candidates:
                    attempted.add(candidate.task_id)
                    result = session.exec(
                        sa_update(TaskRow)
                        .where(
                            col(TaskRow.task_id) == candidate.task_id,
                            col(TaskRow.status) == TaskStatus.PENDING.value,
                        )
                        .values(
                            status=TaskStatus.PROCESSING.value,
                            claimed_by=worker_id,
                            claimed_at=db_now,
                            progress_percent=None,
                            progress_message=None,
                            updated_at=db_now,
                        ),
                    )
                    if result.rowcount != 1:
                        continue
                    claimed_ids.append(candidate.task_id)
                    self._add_event(
                        session=session,
                        task_id=candidate.task_id,
                        event_type="claimed",
                        status_from=TaskStatus.PENDING,
                        status_to=TaskStatus.PROCESSING,
                        details={"worker_id": worker_id, "retry_count": candidate.retry_count},
                    )
            if not claimed_ids:
                session.rollback()
                return []
            session.commit()

            rows = session.exec(
                select(TaskRow).where(col(TaskRow.task_id).in_(claimed_ids)),
            ).all()
            by_id = {row.task_id: _to_task_view(row) for row in rows}
        return [by_id[task_id] for task_id in claimed_ids if task_id in by_id]

    # -- resolution by the executing worker ------------------------------------

    def complete(
        self,
        *,
        task_id: str,
        worker_id: str | None = None,
        result_summary: str | None = None,
    ) -> bool:
        """Mark a processing task as completed and archive it in place."""

        db_now = to_db_datetime(utc_now())
        with self._session() as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(*_processing_filter(task_id=task_id, worker_id=worker_id))
                .values(
                    status=TaskStatus.COMPLETED.value,
                    claimed_by=None,
                    claimed_at=None,
                    completed_at=db_now,
                    result_summary=result_summary,
                    updated_at=db_now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.COMPLETED,
                details={"worker_id": worker_id, "result_summary": result_summary},
            )
            session.commit()
            return True

    def reschedule(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str | None,
        delay_seconds: float,
        error: str,
        category: ErrorCategory,
        details: dict[str, object] | None = None,
        now: datetime | None = None,
    ) -> datetime | None:
        """Return a failed processing task to pending with backoff.

        Spends one unit of retry budget. Refuses (returns ``None``) when the
        budget is already exhausted or the caller no longer holds the claim.
        """

        moment = now or utc_now()
        with self._session() as session:
            row = session.exec(
                select(TaskRow).where(*_processing_filter(task_id=task_id, worker_id=worker_id)),
            ).one_or_none()
            if row is None or row.retry_count >= row.max_retries:
                return None

            delay_seconds = _bounded_delay(delay_seconds)
            scheduled_at = _not_before(
                to_db_datetime(moment + timedelta(seconds=delay_seconds)),
                row.scheduled_at,
            )
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    *_processing_filter(task_id=task_id, worker_id=worker_id),
                    col(TaskRow.retry_count) == row.retry_count,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    retry_count=row.retry_count + 1,
                    scheduled_at=scheduled_at,
                    last_error=_truncate_error(error),
                    last_error_category=category.value,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=to_db_datetime(moment),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retry_scheduled",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PENDING,
                details={
                    "worker_id": worker_id,
                    "retry_count": row.retry_count + 1,
                    "delay_seconds": round(delay_seconds, 3),
                    "scheduled_at": to_utc_aware_datetime(scheduled_at).isoformat(),
                    "category": category.value,
                    **(details or {}),
                },
            )
            session.commit()
            return to_utc_aware_datetime(scheduled_at)

    def release(
        self,
        *,
        task_id: str,
        worker_id: str | None,
        delay_seconds: float = 0.0,
        reason: str,
    ) -> bool:
        """Return a processing task to pending without spending retry budget."""

        moment = utc_now()
        with self._session() as session:
            row = session.exec(
                select(TaskRow).where(*_processing_filter(task_id=task_id, worker_id=worker_id)),
            ).one_or_none()
            if row is None:
                return False
            delay_seconds = _bounded_delay(delay_seconds)
            scheduled_at = _not_before(
                to_db_datetime(moment + timedelta(seconds=delay_seconds)),
                row.scheduled_at,
            )
            result = session.exec(
                sa_update(TaskRow)
                .where(*_processing_filter(task_id=task_id, worker_id=worker_id))
                .values(
                    status=TaskStatus.PENDING.value,
                    scheduled_at=scheduled_at,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=to_db_datetime(moment),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="released",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PENDING,
                details={
                    "worker_id": worker_id,
                    "reason": reason,
                    "delay_seconds": round(delay_seconds, 3),
                },
            )
            session.commit()
            return True

    def move_to_dead_letter(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str | None,
        final_error: str,
        category: ErrorCategory,
        details: dict[str, object] | None = None,
        alert: dict[str, object] | None = None,
        now: datetime | None = None,
    ) -> str | None:
        """Archive a processing task into the dead-letter store.

        The dead-letter insert and the task delete share one transaction:
        either both land or neither does. An ``alert`` adds an
        ``operator_alert`` event in the same transaction. Returns the
        dead-letter id, or ``None`` when the caller no longer holds the claim.
        """

        db_now = to_db_datetime(now or utc_now())
        with self._session() as session:
            row = session.exec(
                select(TaskRow).where(*_processing_filter(task_id=task_id, worker_id=worker_id)),
            ).one_or_none()
            if row is None:
                return None

            dead_letter_id = str(uuid4())
            failing_worker = row.claimed_by
            session.add(
                DeadLetterRow(
                    dead_letter_id=dead_letter_id,
                    task_id=row.task_id,
                    task_type=row.task_type,
                    payload_json=row.payload_json,
                    priority=row.priority,
                    final_error=_truncate_error(final_error),
                    error_category=category.value,
                    retry_count=row.retry_count,
                    max_retries=row.max_retries,
                    worker_id=failing_worker,
                    idempotency_key=row.idempotency_key,
                    replay_of=row.replay_of,
                    task_created_at=row.created_at,
                    failed_at=db_now,
                ),
            )
            result = session.exec(
                sa_delete(TaskRow).where(
                    *_processing_filter(task_id=task_id, worker_id=failing_worker),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="dead_lettered",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.FAILED,
                details={
                    "dead_letter_id": dead_letter_id,
                    "worker_id": failing_worker,
                    "category": category.value,
                    "retry_count": row.retry_count,
                    **(details or {}),
                },
            )
            if alert is not None:
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="operator_alert",
                    status_from=TaskStatus.FAILED,
                    status_to=TaskStatus.FAILED,
                    details={"dead_letter_id": dead_letter_id, **alert},
                )
            session.commit()
        logger.warning(
            "Task moved to dead letters (task_id=%s type=%s category=%s retries=%d).",
            task_id,
            row.task_type,
            category.value,
            row.retry_count,
        )
        return dead_letter_id

    def report_progress(
        self,
        *,
        task_id: str,
        percent: int,
        message: str | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """Store progress of a processing task; callers throttle the write rate."""

        if not 0 <= percent <= 100:  # noqa: PLR2004
            raise ValueError(f"percent must be within [0, 100], got {percent}")
        with self._session() as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(*_processing_filter(task_id=task_id, worker_id=worker_id))
                .values(
                    progress_percent=percent,
                    progress_message=message,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="progress",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PROCESSING,
                details={"percent": percent, "message": message},
            )
            session.commit()
            return True

    # -- periodic maintenance --------------------------------------------------

    def reclaim_stuck(self, *, stuck_threshold: timedelta, now: datetime | None = None) -> int:
        """Return tasks processing longer than ``stuck_threshold`` to pending.

        The claiming worker is presumed dead, so ``retry_count`` is left
        untouched.
        """

        if stuck_threshold.total_seconds() <= 0:
            raise ValueError("stuck_threshold must be > 0")
        moment = now or utc_now()
        cutoff = to_db_datetime(moment - stuck_threshold)
        reclaimed = 0
        with self._session() as session:
            stuck = session.exec(
                select(TaskRow).where(
                    TaskRow.status == TaskStatus.PROCESSING.value,
                    col(TaskRow.claimed_at) < cutoff,
                ),
            ).all()
            for row in stuck:
                previous_worker = row.claimed_by
                claimed_at = row.claimed_at
                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.task_id) == row.task_id,
                        col(TaskRow.status) == TaskStatus.PROCESSING.value,
                        col(TaskRow.claimed_at) < cutoff,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        claimed_by=None,
                        claimed_at=None,
                        progress_percent=None,
                        progress_message=None,
                        updated_at=to_db_datetime(moment),
                    ),
                )
                if result.rowcount != 1:
                    continue
                reclaimed += 1
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    event_type="reclaimed",
                    status_from=TaskStatus.PROCESSING,
                    status_to=TaskStatus.PENDING,
                    details={
                        "previous_worker_id": previous_worker,
                        "claimed_at": (
                            to_utc_aware_datetime(claimed_at).isoformat()
                            if claimed_at is not None
                            else None
                        ),
                        "stuck_threshold_seconds": stuck_threshold.total_seconds(),
                    },
                )
                logger.warning(
                    "Reclaimed stuck task (task_id=%s worker_id=%s claimed_at=%s).",
                    row.task_id,
                    previous_worker,
                    to_utc_aware_datetime(claimed_at).isoformat() if claimed_at else "-",
                )
            session.commit()
        return reclaimed

    def promote_aged(
        self,
        *,
        older_than: timedelta,
        step: int = 1,
        max_priority: int = MAX_PRIORITY,
        now: datetime | None = None,
    ) -> int:
        """Raise priority of pending tasks waiting longer than ``older_than``, capped."""

        if step < 1:
            raise ValueError("step must be >= 1")
        if not MIN_PRIORITY <= max_priority <= MAX_PRIORITY:
            raise ValueError(f"max_priority must be within [{MIN_PRIORITY}, {MAX_PRIORITY}]")
        moment = now or utc_now()
        cutoff = to_db_datetime(moment - older_than)
        with self._session() as session:
            candidates = session.exec(
                select(TaskRow).where(
                    TaskRow.status == TaskStatus.PENDING.value,
                    col(TaskRow.scheduled_at) <= cutoff,
                    col(TaskRow.priority) < max_priority,
                ),
            ).all()
            promoted = 0
            for row in candidates:
                new_priority = min(row.priority + step, max_priority)
                result = session.exec(
                    sa_update(TaskRow)
                    .where(
                        col(TaskRow.task_id) == row.task_id,
                        col(TaskRow.status) == TaskStatus.PENDING.value,
                        col(TaskRow.priority) == row.priority,
                    )
                    .values(priority=new_priority, updated_at=to_db_datetime(moment)),
                )
                if result.rowcount != 1:
                    continue
                promoted += 1
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    event_type="promoted",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.PENDING,
                    details={"priority_from": row.priority, "priority_to": new_priority},
                )
            session.commit()
        return promoted

    # -- dead letters ----------------------------------------------------------

    def list_dead_letters(self, query: DeadLetterFilter | None = None) -> list[DeadLetterView]:
        query = query or DeadLetterFilter()
        with self._session() as session:
            statement = select(DeadLetterRow)
            if query.task_type is not None:
                statement = statement.where(DeadLetterRow.task_type == query.task_type)
            if query.error_category is not None:
                statement = statement.where(
                    DeadLetterRow.error_category == query.error_category.value,
                )
            if query.since is not None:
                statement = statement.where(
                    col(DeadLetterRow.failed_at) >= to_db_datetime(query.since),
                )
            statement = statement.order_by(col(DeadLetterRow.failed_at).desc()).limit(query.limit)
            rows = session.exec(statement).all()
            return [_to_dead_letter_view(row) for row in rows]

    def get_dead_letter(self, dead_letter_id: str) -> DeadLetterView | None:
        with self._session() as session:
            row = session.get(DeadLetterRow, dead_letter_id)
            return _to_dead_letter_view(row) if row is not None else None

    def replay(self, dead_letter_id: str, *, priority: int | None = None) -> TaskView:
        """Create a fresh pending task from a dead-letter entry.

        The entry itself is left untouched; the new task points back to it
        through ``replay_of``.
        """

        if priority is not None and not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValueError(f"priority must be within [{MIN_PRIORITY}, {MAX_PRIORITY}]")
        now = to_db_datetime(utc_now())
        with self._session() as session:
            entry = session.get(DeadLetterRow, dead_letter_id)
            if entry is None:
                raise DeadLetterNotFoundError(f"Dead letter not found: {dead_letter_id}")
            task_id = str(uuid4())
            row = TaskRow(
                task_id=task_id,
                task_type=entry.task_type,
                payload_json=entry.payload_json,
                priority=entry.priority if priority is None else priority,
                status=TaskStatus.PENDING.value,
                retry_count=0,
                max_retries=entry.max_retries,
                scheduled_at=now,
                replay_of=dead_letter_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="replayed",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"dead_letter_id": dead_letter_id, "original_task_id": entry.task_id},
            )
            session.commit()
            session.refresh(row)
            view = _to_task_view(row)
        logger.info("Replayed dead letter %s as task %s.", dead_letter_id, task_id)
        return view

    # -- worker registry -------------------------------------------------------

    def register_worker(
        self,
        *,
        worker_id: str,
        capabilities: Iterable[str],
        hostname: str | None = None,
        pid: int | None = None,
    ) -> WorkerView:
        """Create or refresh the registry row owned by ``worker_id``."""

        now = to_db_datetime(utc_now())
        capabilities_json = json.dumps(sorted(set(capabilities)))
        with self._session() as session:
            row = session.get(WorkerRow, worker_id)
            if row is None:
                row = WorkerRow(
                    worker_id=worker_id,
                    capabilities_json=capabilities_json,
                    state=WorkerState.ACTIVE.value,
                    hostname=hostname,
                    pid=pid,
                    started_at=now,
                    last_heartbeat=now,
                )
            else:
                row.capabilities_json = capabilities_json
                row.state = WorkerState.ACTIVE.value
                row.hostname = hostname
                row.pid = pid
                row.last_heartbeat = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker_view(row)

    def heartbeat(self, *, worker_id: str) -> bool:
        """Refresh liveness; ``False`` means the row was swept and must be re-registered."""

        with self._session() as session:
            result = session.exec(
                sa_update(WorkerRow)
                .where(col(WorkerRow.worker_id) == worker_id)
                .values(last_heartbeat=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_draining(self, *, worker_id: str) -> bool:
        with self._session() as session:
            result = session.exec(
                sa_update(WorkerRow)
                .where(col(WorkerRow.worker_id) == worker_id)
                .values(state=WorkerState.DRAINING.value),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def deregister_worker(self, *, worker_id: str) -> bool:
        with self._session() as session:
            result = session.exec(
                sa_delete(WorkerRow).where(col(WorkerRow.worker_id) == worker_id),
            )
            session.commit()
            return result.rowcount == 1

    def sweep_dead_workers(
        self,
        *,
        heartbeat_interval: timedelta,
        max_missed_intervals: int,
        now: datetime | None = None,
    ) -> list[str]:
        """Delete registry rows whose heartbeat is older than the allowed miss window."""

        if max_missed_intervals < 1:
            raise ValueError("max_missed_intervals must be >= 1")
        cutoff = to_db_datetime((now or utc_now()) - heartbeat_interval * max_missed_intervals)
        with self._session() as session:
            stale = session.exec(
                select(WorkerRow).where(col(WorkerRow.last_heartbeat) < cutoff),
            ).all()
            removed: list[str] = []
            for row in stale:
                result = session.exec(
                    sa_delete(WorkerRow).where(
                        col(WorkerRow.worker_id) == row.worker_id,
                        col(WorkerRow.last_heartbeat) < cutoff,
                    ),
                )
                if result.rowcount == 1:
                    removed.append(row.worker_id)
            session.commit()
        for worker_id in removed:
            logger.warning("Removed dead worker from registry (worker_id=%s).", worker_id)
        return removed

    def list_workers(self) -> list[WorkerView]:
        with self._session() as session:
            rows = session.exec(select(WorkerRow).order_by(col(WorkerRow.worker_id).asc())).all()
            return [_to_worker_view(row) for row in rows]

    # -- queries ---------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskView | None:
        with self._session() as session:
            row = session.get(TaskRow, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        task_type: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status and type."""

        with self._session() as session:
            statement = select(TaskRow)
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            if task_type is not None:
                statement = statement.where(TaskRow.task_type == task_type)
            statement = statement.order_by(col(TaskRow.created_at).desc()).limit(limit)
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with self._session() as session:
            task = session.get(TaskRow, task_id)
            if task is None:
                return None
            view = _to_task_view(task)
            events = self._list_events(session=session, task_id=task_id)
        return TaskDetails(task=view, events=events)

    def list_task_events(self, *, task_id: str) -> list[TaskEventView]:
        """Event history of a task, also available after it was dead-lettered."""

        with self._session() as session:
            return self._list_events(session=session, task_id=task_id)

    def counts(self) -> QueueCounts:
        with self._session() as session:
            grouped = session.exec(
                select(TaskRow.status, func.count()).group_by(TaskRow.status),
            ).all()
            dead_letters = session.exec(select(func.count()).select_from(DeadLetterRow)).one()
            workers = session.exec(select(func.count()).select_from(WorkerRow)).one()
        by_status = {str(status): int(count) for status, count in grouped}
        return QueueCounts(
            pending=by_status.get(TaskStatus.PENDING.value, 0),
            processing=by_status.get(TaskStatus.PROCESSING.value, 0),
            completed=by_status.get(TaskStatus.COMPLETED.value, 0),
            dead_letters=int(dead_letters),
            workers=int(workers),
        )

    # -- internals -------------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise StoreUnavailableError(f"Task store unavailable: {error}") from error

    def _list_events(self, *, session: Session, task_id: str) -> list[TaskEventView]:
        event_rows = session.exec(
            select(TaskEventRow)
            .where(TaskEventRow.task_id == task_id)
            .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
        ).all()
        events: list[TaskEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _processing_filter(*, task_id: str, worker_id: str | None) -> list[Any]:
    clauses: list[Any] = [
        col(TaskRow.task_id) == task_id,
        col(TaskRow.status) == TaskStatus.PROCESSING.value,
    ]
    if worker_id is not None:
        clauses.append(col(TaskRow.claimed_by) == worker_id)
    return clauses


def _bounded_delay(delay_seconds: float) -> float:
    """Clamp a delay so the resulting timestamp always stays representable."""

    if math.isnan(delay_seconds):
        return 0.0
    return min(MAX_SCHEDULE_DELAY_SECONDS, max(0.0, delay_seconds))


def _not_before(candidate: datetime, floor: datetime) -> datetime:
    floor_naive = to_db_datetime(floor)
    return candidate if candidate >= floor_naive else floor_naive


def _truncate_error(value: str) -> str:
    if len(value) <= MAX_ERROR_CHARS:
        return value
    return value[: MAX_ERROR_CHARS - 3] + "..."


def _dump_payload(payload: dict[str, Any]) -> str:
    if not isinstance(payload, dict):
        raise TypeError("payload must be a JSON object")
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _load_payload(raw: str) -> dict[str, Any]:
    parsed = json.loads(raw) if raw else {}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _optional_utc(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        task_type=row.task_type,
        payload=_load_payload(row.payload_json),
        priority=row.priority,
        status=TaskStatus(row.status),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        last_error=row.last_error,
        last_error_category=(
            ErrorCategory(row.last_error_category) if row.last_error_category else None
        ),
        scheduled_at=to_utc_aware_datetime(row.scheduled_at),
        claimed_by=row.claimed_by,
        claimed_at=_optional_utc(row.claimed_at),
        idempotency_key=row.idempotency_key,
        progress_percent=row.progress_percent,
        progress_message=row.progress_message,
        result_summary=row.result_summary,
        completed_at=_optional_utc(row.completed_at),
        replay_of=row.replay_of,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_dead_letter_view(row: DeadLetterRow) -> DeadLetterView:
    return DeadLetterView(
        dead_letter_id=row.dead_letter_id,
        task_id=row.task_id,
        task_type=row.task_type,
        payload=_load_payload(row.payload_json),
        priority=row.priority,
        final_error=row.final_error,
        error_category=ErrorCategory(row.error_category),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        worker_id=row.worker_id,
        task_created_at=to_utc_aware_datetime(row.task_created_at),
        failed_at=to_utc_aware_datetime(row.failed_at),
        replay_of=row.replay_of,
    )


def _to_worker_view(row: WorkerRow) -> WorkerView:
    parsed = json.loads(row.capabilities_json) if row.capabilities_json else []
    return WorkerView(
        worker_id=row.worker_id,
        capabilities=frozenset(str(item) for item in parsed),
        state=WorkerState(row.state),
        hostname=row.hostname,
        pid=row.pid,
        started_at=to_utc_aware_datetime(row.started_at),
        last_heartbeat=to_utc_aware_datetime(row.last_heartbeat),
    )
