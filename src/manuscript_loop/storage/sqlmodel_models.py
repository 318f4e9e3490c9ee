"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

LOOP_STATE_ROW_ID = 1


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_status_score", "status", "score"),
        Index("idx_tasks_chapter_milestone", "chapter", "milestone"),
    )

    task_id: str = Field(primary_key=True)
    kind: str = Field(index=True)
    chapter: str | None = Field(default=None, index=True)
    milestone: str | None = Field(default=None)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    priority: str = Field(default="normal")
    score: int = Field(default=0)
    status: str = Field(index=True)
    depends_on_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    review_flagged: bool = Field(default=False)
    source_task_id: str | None = Field(default=None, index=True)
    failure_reason: str | None = Field(default=None, sa_column=Column(Text))
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LoopStateRow(SQLModel, table=True):
    __tablename__ = "loop_state"  # type: ignore[bad-override]

    id: int = Field(default=LOOP_STATE_ROW_ID, primary_key=True)
    iteration_count: int = Field(default=0)
    consecutive_failures: int = Field(default=0)
    breaker_open: bool = Field(default=False)
    breaker_trips: int = Field(default=0)
    failed_attempts: int = Field(default=0)
    last_successful_task_id: str | None = Field(default=None)
    last_checkpoint_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
