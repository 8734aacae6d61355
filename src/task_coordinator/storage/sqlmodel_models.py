"""SQLModel ORM tables for the task queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class CoordinatorTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_queue", "status", "agent_type", "priority", "created_at"),
        CheckConstraint("priority BETWEEN 1 AND 10", name="ck_tasks_priority_range"),
    )

    task_id: str = Field(primary_key=True)
    agent_type: str = Field(index=True)
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    priority: int = Field(default=1)
    status: str = Field(index=True)
    workspace_path: str
    timeout_seconds: int = Field(default=300)
    max_retries: int = Field(default=3)
    tools_json: str | None = Field(default=None, sa_column=Column(Text))
    environment_json: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    tags_json: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = Field(default=0)
    worker_id: str | None = Field(default=None, index=True)
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskDependency(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    # Not a foreign key: a dependency may name a task that is enqueued later.
    depends_on: str = Field(primary_key=True, index=True)
    position: int = Field(default=0)


class TaskEvent(SQLModel, table=True):
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
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
