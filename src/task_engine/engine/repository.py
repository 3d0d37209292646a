"""Persistent queue repository for agent tasks."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from task_engine.engine.models import (
    EventLevel,
    FailureClass,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from task_engine.storage.alembic_runner import upgrade_head
from task_engine.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_engine.storage.sqlmodel_models import AgentTask, AgentTaskEvent

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_CONTENTION_RETRIES = 8


class TaskRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every status transition is a single conditional ``UPDATE`` guarded by the
    status (and, after a claim, the attempt number) the caller expects. A
    transition that matches zero rows means another worker got there first.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        claim_contention_retries: int = DEFAULT_CLAIM_CONTENTION_RETRIES,
    ) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.claim_contention_retries = claim_contention_retries
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue_task(self, payload: TaskCreate) -> TaskView:
        """Create a queued task. This is the only external write path."""

        if payload.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {payload.max_attempts}")
        if payload.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {payload.timeout_seconds}")
        if not payload.owner_id.strip():
            raise ValueError("owner_id is required.")

        now = utc_now()
        scheduled_for = to_db_datetime(payload.scheduled_for or now)
        with Session(self.engine) as session:
            row = AgentTask(
                task_id=payload.task_id or str(uuid4()),
                action=payload.action,
                parameters_json=json.dumps(payload.parameters, ensure_ascii=False, sort_keys=True),
                target_id=payload.target_id,
                owner_id=payload.owner_id,
                status=TaskStatus.QUEUED.value,
                attempt_count=0,
                max_attempts=payload.max_attempts,
                timeout_seconds=payload.timeout_seconds,
                scheduled_for=scheduled_for,
                next_run_at=scheduled_for,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def claim_next_ready_task(self, *, worker_id: str) -> TaskView | None:
        """Atomically claim the oldest eligible queued task, or return ``None``."""

        contention = 0
        while contention <= self.claim_contention_retries:
            now = utc_now()
            with Session(self.engine) as session:
                try:
                    candidate = session.exec(
                        select(AgentTask)
                        .where(
                            AgentTask.status == TaskStatus.QUEUED.value,
                            AgentTask.next_run_at <= to_db_datetime(now),
                        )
                        .order_by(
                            col(AgentTask.next_run_at).asc(),
                            col(AgentTask.created_at).asc(),
                            col(AgentTask.id).asc(),
                        )
                        .limit(1),
                    ).one_or_none()
                    if candidate is None:
                        return None

                    result = session.exec(
                        sa_update(AgentTask)
                        .where(
                            col(AgentTask.task_id) == candidate.task_id,
                            col(AgentTask.status) == TaskStatus.QUEUED.value,
                        )
                        .values(
                            status=TaskStatus.RUNNING.value,
                            attempt_count=candidate.attempt_count + 1,
                            started_at=to_db_datetime(now),
                            finished_at=None,
                            worker_id=worker_id,
                            updated_at=to_db_datetime(now),
                        ),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        contention += 1
                        continue

                    session.commit()
                except OperationalError as error:
                    session.rollback()
                    contention += 1
                    logger.debug("Claim contention for %s: %s", worker_id, error)
                    continue

                claimed = session.exec(
                    select(AgentTask).where(AgentTask.task_id == candidate.task_id),
                ).one()
                return _to_task_view(claimed)

        logger.debug("Giving up claim after %d contended attempts (%s)", contention, worker_id)
        return None

    def complete_task(
        self,
        *,
        task_id: str,
        attempt: int,
        result: dict[str, Any],
    ) -> bool:
        """Mark a running task as succeeded."""

        now = utc_now()
        return self._transition_running(
            task_id=task_id,
            attempt=attempt,
            values={
                "status": TaskStatus.SUCCESS.value,
                "result_json": encode_result(result),
                "error": None,
                "failure_class": None,
                "finished_at": to_db_datetime(now),
                "updated_at": to_db_datetime(now),
            },
        )

    def fail_task(
        self,
        *,
        task_id: str,
        attempt: int,
        failure_class: FailureClass,
        error: str,
    ) -> bool:
        """Mark a running task as terminally failed."""

        now = utc_now()
        return self._transition_running(
            task_id=task_id,
            attempt=attempt,
            values={
                "status": TaskStatus.ERROR.value,
                "failure_class": failure_class.value,
                "error": error,
                "finished_at": to_db_datetime(now),
                "updated_at": to_db_datetime(now),
            },
        )

    def schedule_retry(
        self,
        *,
        task_id: str,
        attempt: int,
        next_run_at: datetime,
        failure_class: FailureClass,
        error: str,
    ) -> bool:
        """Requeue a running task for automatic retry."""

        now = utc_now()
        return self._transition_running(
            task_id=task_id,
            attempt=attempt,
            values={
                "status": TaskStatus.QUEUED.value,
                "next_run_at": to_db_datetime(next_run_at),
                "failure_class": failure_class.value,
                "error": error,
                "worker_id": None,
                "updated_at": to_db_datetime(now),
            },
        )

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AgentTask).where(AgentTask.task_id == task_id),
            ).one_or_none()
        return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        owner_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status and owner."""

        with Session(self.engine) as session:
            statement = select(AgentTask).order_by(col(AgentTask.id).desc()).limit(limit)
            if status is not None:
                statement = statement.where(AgentTask.status == status.value)
            if owner_id is not None:
                statement = statement.where(AgentTask.owner_id == owner_id)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_stale_running_tasks(self, *, stale_after: timedelta) -> list[TaskView]:
        """Running tasks whose attempt started longer ago than ``stale_after``."""

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentTask)
                .where(
                    AgentTask.status == TaskStatus.RUNNING.value,
                    col(AgentTask.started_at) <= cutoff,
                )
                .order_by(col(AgentTask.started_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_events(self, *, task_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentTaskEvent)
                .where(AgentTaskEvent.task_id == task_id)
                .order_by(col(AgentTaskEvent.id).asc()),
            ).all()
        return [_to_event_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        task = self.get_task(task_id=task_id)
        if task is None:
            return None
        return TaskDetails(task=task, events=self.list_events(task_id=task_id))

    def _transition_running(
        self,
        *,
        task_id: str,
        attempt: int,
        values: dict[str, object],
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.status) == TaskStatus.RUNNING.value,
                    col(AgentTask.attempt_count) == attempt,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def encode_result(result: dict[str, Any]) -> str:
    """Serialize a task result the way it is stored in ``result_json``."""

    return json.dumps(result, ensure_ascii=False, sort_keys=True)


def _loads_object(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    parsed = json.loads(value)
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _to_task_view(row: AgentTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        action=row.action,
        parameters=_loads_object(row.parameters_json) or {},
        target_id=row.target_id,
        owner_id=row.owner_id,
        status=TaskStatus(row.status),
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        timeout_seconds=row.timeout_seconds,
        scheduled_for=to_utc_aware_datetime(row.scheduled_for),
        next_run_at=to_utc_aware_datetime(row.next_run_at),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        worker_id=row.worker_id,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        result=_loads_object(row.result_json),
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: AgentTaskEvent) -> TaskEventView:
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        level=EventLevel(row.level),
        event_type=row.event_type,
        message=row.message,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        context=_loads_object(row.context_json) or {},
    )
