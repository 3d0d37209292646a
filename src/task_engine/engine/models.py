"""Domain models for the agent task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class EventLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    CREDENTIAL_UNAVAILABLE = "credential_unavailable"
    EXECUTOR_FAILURE = "executor_failure"
    TIMEOUT = "timeout"
    UNKNOWN_ACTION = "unknown_action"
    INVALID_PARAMETERS = "invalid_parameters"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing an agent task."""

    action: str
    owner_id: str
    parameters: dict[str, Any] = field(default_factory=dict)
    target_id: str | None = None
    task_id: str | None = None
    max_attempts: int = 1
    timeout_seconds: int = 60
    scheduled_for: datetime | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and worker logic."""

    task_id: str
    action: str
    parameters: dict[str, Any]
    target_id: str | None
    owner_id: str
    status: TaskStatus
    attempt_count: int
    max_attempts: int
    timeout_seconds: int
    scheduled_for: datetime
    next_run_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    worker_id: str | None
    failure_class: FailureClass | None
    result: dict[str, Any] | None
    error: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in {TaskStatus.SUCCESS, TaskStatus.ERROR}


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    level: EventLevel
    event_type: str
    message: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]
