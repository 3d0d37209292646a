"""Executor interface for running one claimed task."""

from __future__ import annotations

import threading
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Protocol

from task_engine.engine.actions import ActionKind


@dataclass(slots=True)
class ActionRequest:
    """Inputs required to execute one task attempt."""

    task_id: str
    action: ActionKind
    parameters: dict[str, Any]
    timeout_seconds: float
    credential: dict[str, Any] | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def __repr__(self) -> str:
        return (
            f"ActionRequest(task_id={self.task_id!r}, action={self.action.value!r}, "
            f"timeout_seconds={self.timeout_seconds}, "
            f"credential={'<redacted>' if self.credential is not None else None})"
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass(slots=True)
class ActionResult:
    """Structured outcome stored as the task result."""

    payload: dict[str, Any]


class ActionExecutionError(RuntimeError):
    """Executor error with retryability hint."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class ActionSession(Protocol):
    """One scoped automation resource (browser, HTTP client, ...)."""

    def run(self, request: ActionRequest) -> ActionResult:
        """Run an attempt and return its result, raising on failure."""


class ActionExecutor(Protocol):
    """Protocol implemented by action executors.

    ``session()`` is entered once per attempt and exited on every path, so
    implementations release their resources in the context manager's exit.
    """

    supported_actions: frozenset[ActionKind]

    def session(self) -> AbstractContextManager[ActionSession]:
        """Open the resource used for one attempt."""
