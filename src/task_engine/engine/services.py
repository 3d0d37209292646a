"""Use-case services for the agent task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from task_engine.engine.actions import resolve_action, validate_parameters
from task_engine.engine.events import EventLog
from task_engine.engine.failures import TaskFailure
from task_engine.engine.models import EventLevel, TaskCreate, TaskStatus, TaskView
from task_engine.engine.repository import TaskRepository


@dataclass(slots=True)
class EnqueueTask:
    """High-level command issued by the decision layer."""

    action: str
    owner_id: str
    parameters: dict[str, Any] = field(default_factory=dict)
    target_id: str | None = None
    max_attempts: int = 1
    timeout_seconds: int = 60
    scheduled_for: datetime | None = None


class TaskService:
    """Validates decision-layer requests and inserts them into the queue."""

    def __init__(self, *, repository: TaskRepository, events: EventLog | None = None) -> None:
        self.repository = repository
        self.events = events or EventLog(repository.engine)

    def enqueue(self, command: EnqueueTask) -> TaskView:
        """Enqueue a task after checking its action and required parameters.

        Raises ``ValueError`` for requests that could never succeed, so the
        caller finds out at enqueue time instead of through a failed task.
        """

        try:
            action_spec = resolve_action(command.action)
            validate_parameters(action_spec, command.parameters)
        except TaskFailure as error:
            raise ValueError(str(error)) from error
        if action_spec.needs_credential and not (command.target_id or "").strip():
            raise ValueError(f"Action {action_spec.kind.value!r} requires a target_id.")

        task = self.repository.enqueue_task(
            TaskCreate(
                action=action_spec.kind.value,
                owner_id=command.owner_id,
                parameters=command.parameters,
                target_id=command.target_id,
                max_attempts=command.max_attempts,
                timeout_seconds=command.timeout_seconds,
                scheduled_for=command.scheduled_for,
            ),
        )
        self.events.append(
            task.task_id,
            EventLevel.INFO,
            "Task enqueued",
            {"action": task.action, "max_attempts": task.max_attempts},
            event_type="enqueued",
            status_to=TaskStatus.QUEUED,
        )
        return task
