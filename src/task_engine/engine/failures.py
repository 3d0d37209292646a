"""Failure taxonomy shared by the worker loop and retry policy."""

from __future__ import annotations

from task_engine.engine.models import FailureClass


class TaskFailure(RuntimeError):
    """Failure of one task attempt with a retryability verdict."""

    failure_class: FailureClass = FailureClass.EXECUTOR_FAILURE
    retryable: bool = True

    def to_event_context(self) -> dict[str, object]:
        return {
            "failure_class": self.failure_class.value,
            "retryable": self.retryable,
            "error": str(self),
        }


class CredentialUnavailable(TaskFailure):
    """Credential lookup or decryption failed; retrying the same data cannot help."""

    failure_class = FailureClass.CREDENTIAL_UNAVAILABLE
    retryable = False


class ExecutorFailure(TaskFailure):
    """The action executor raised while running the task."""

    failure_class = FailureClass.EXECUTOR_FAILURE

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ExecutionTimeout(TaskFailure):
    failure_class = FailureClass.TIMEOUT
    retryable = True


class UnknownAction(TaskFailure):
    """No handler exists for the task's action; a decision-layer bug."""

    failure_class = FailureClass.UNKNOWN_ACTION
    retryable = False


class InvalidParameters(TaskFailure):
    failure_class = FailureClass.INVALID_PARAMETERS
    retryable = False
