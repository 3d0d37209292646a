"""SQLModel ORM tables for the task queue and credential vault."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class AgentTask(SQLModel, table=True):
    __tablename__ = "agent_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_tasks_queue", "status", "next_run_at", "created_at", "id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(unique=True, index=True)
    action: str = Field(index=True)
    parameters_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    target_id: str | None = Field(default=None, index=True)
    owner_id: str = Field(index=True)
    status: str = Field(index=True)
    attempt_count: int = Field(default=0)
    max_attempts: int = Field(default=1)
    timeout_seconds: int = Field(default=60)
    scheduled_for: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    next_run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    worker_id: str | None = Field(default=None, index=True)
    failure_class: str | None = Field(default=None, index=True)
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentTaskEvent(SQLModel, table=True):
    __tablename__ = "agent_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    level: str = Field(index=True)
    event_type: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    context_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class IntegrationCredential(SQLModel, table=True):
    __tablename__ = "integration_credentials"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("target_id", "owner_id", name="uq_integration_credentials_target_owner"),
    )

    id: int | None = Field(default=None, primary_key=True)
    target_id: str = Field(index=True)
    owner_id: str = Field(index=True)
    payload: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
