"""Create agent task queue and append-only task event log."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261002_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("parameters_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_agent_tasks_task_id", "agent_tasks", ["task_id"], unique=True)
    op.create_index("ix_agent_tasks_action", "agent_tasks", ["action"], unique=False)
    op.create_index("ix_agent_tasks_target_id", "agent_tasks", ["target_id"], unique=False)
    op.create_index("ix_agent_tasks_owner_id", "agent_tasks", ["owner_id"], unique=False)
    op.create_index("ix_agent_tasks_status", "agent_tasks", ["status"], unique=False)
    op.create_index("ix_agent_tasks_worker_id", "agent_tasks", ["worker_id"], unique=False)
    op.create_index(
        "ix_agent_tasks_failure_class",
        "agent_tasks",
        ["failure_class"],
        unique=False,
    )
    op.create_index(
        "idx_agent_tasks_queue",
        "agent_tasks",
        ["status", "next_run_at", "created_at", "id"],
        unique=False,
    )

    op.create_table(
        "agent_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("level", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("context_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["agent_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_agent_task_events_task_id", "agent_task_events", ["task_id"])
    op.create_index("ix_agent_task_events_level", "agent_task_events", ["level"])
    op.create_index("ix_agent_task_events_event_type", "agent_task_events", ["event_type"])
    op.create_index(
        "idx_agent_task_events_task_time",
        "agent_task_events",
        ["task_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_agent_task_events_task_time", table_name="agent_task_events")
    op.drop_index("ix_agent_task_events_event_type", table_name="agent_task_events")
    op.drop_index("ix_agent_task_events_level", table_name="agent_task_events")
    op.drop_index("ix_agent_task_events_task_id", table_name="agent_task_events")
    op.drop_table("agent_task_events")
    op.drop_index("idx_agent_tasks_queue", table_name="agent_tasks")
    op.drop_index("ix_agent_tasks_failure_class", table_name="agent_tasks")
    op.drop_index("ix_agent_tasks_worker_id", table_name="agent_tasks")
    op.drop_index("ix_agent_tasks_status", table_name="agent_tasks")
    op.drop_index("ix_agent_tasks_owner_id", table_name="agent_tasks")
    op.drop_index("ix_agent_tasks_target_id", table_name="agent_tasks")
    op.drop_index("ix_agent_tasks_action", table_name="agent_tasks")
    op.drop_index("ix_agent_tasks_task_id", table_name="agent_tasks")
    op.drop_table("agent_tasks")
