"""Retry/backoff policy applied to failed task attempts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from task_engine.engine.failures import TaskFailure
from task_engine.engine.models import TaskView
from task_engine.storage.common import utc_now

DEFAULT_RETRY_BASE_SECONDS = 5.0
DEFAULT_RETRY_MAX_SECONDS = 3_600.0


@dataclass(frozen=True, slots=True)
class Requeue:
    run_at: datetime
    delay_seconds: float


@dataclass(frozen=True, slots=True)
class Terminate:
    reason: str


RetryDecision = Requeue | Terminate


class RetryPolicy:
    """Exponential backoff bounded by the task's ``max_attempts``.

    The n-th failed attempt is retried after ``base * 2 ** (n - 1)`` seconds
    (5, 10, 20, ... with the default base), capped at ``max_delay_seconds``.
    """

    def __init__(
        self,
        *,
        base_delay_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        max_delay_seconds: float = DEFAULT_RETRY_MAX_SECONDS,
    ) -> None:
        if base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0.")
        if max_delay_seconds < base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds.")
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    def on_failure(
        self,
        task: TaskView,
        failure: TaskFailure,
        *,
        now: datetime | None = None,
    ) -> RetryDecision:
        attempts = max(task.attempt_count, 1)
        if not failure.retryable:
            return Terminate(reason=f"{failure.failure_class.value}: {failure}")

        max_attempts = task.max_attempts if task.max_attempts >= 1 else 1
        if attempts >= max_attempts:
            return Terminate(reason=f"Failed after {attempts} attempts: {failure}")

        delay_seconds = self.compute_delay(attempt=attempts)
        run_at = (now or utc_now()) + timedelta(seconds=delay_seconds)
        return Requeue(run_at=run_at, delay_seconds=delay_seconds)

    def compute_delay(self, *, attempt: int) -> float:
        return min(
            self.max_delay_seconds,
            self.base_delay_seconds * (2 ** max(attempt - 1, 0)),
        )
