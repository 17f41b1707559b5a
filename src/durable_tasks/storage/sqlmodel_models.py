"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_claim", "status", "priority", "scheduled_at"),
        Index("idx_tasks_processing_claimed_at", "status", "claimed_at"),
        Index(
            "uq_tasks_idempotency_key",
            "idempotency_key",
            unique=True,
            sqlite_where=text("idempotency_key IS NOT NULL"),
        ),
    )

    task_id: str = Field(primary_key=True)
    task_type: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=0)
    status: str = Field(index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    last_error_category: str | None = None
    scheduled_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_by: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    idempotency_key: str | None = None
    progress_percent: int | None = None
    progress_message: str | None = None
    result_summary: str | None = Field(default=None, sa_column=Column(Text))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    replay_of: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DeadLetterRow(SQLModel, table=True):
    __tablename__ = "dead_letters"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_dead_letters_type_failed_at", "task_type", "failed_at"),)

    dead_letter_id: str = Field(primary_key=True)
    task_id: str = Field(index=True, unique=True)
    task_type: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = 0
    final_error: str = Field(sa_column=Column(Text, nullable=False))
    error_category: str = Field(index=True)
    retry_count: int = 0
    max_retries: int = 0
    worker_id: str | None = None
    idempotency_key: str | None = None
    replay_of: str | None = None
    task_created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    failed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkerRow(SQLModel, table=True):
    __tablename__ = "workers"  # type: ignore[bad-override]

    worker_id: str = Field(primary_key=True)
    capabilities_json: str = Field(sa_column=Column(Text, nullable=False))
    state: str = Field(default="active")
    hostname: str | None = None
    pid: int | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_heartbeat: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(sa_column=Column(Text, nullable=False))
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
