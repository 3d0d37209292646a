"""Queue worker that executes claimed agent tasks."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from task_engine.engine.actions import resolve_action, validate_parameters
from task_engine.engine.events import EventLog
from task_engine.engine.failures import (
    CredentialUnavailable,
    ExecutionTimeout,
    ExecutorFailure,
    TaskFailure,
    UnknownAction,
)
from task_engine.engine.models import EventLevel, FailureClass, TaskStatus, TaskView
from task_engine.engine.repository import TaskRepository, encode_result
from task_engine.engine.retry import Requeue, RetryPolicy
from task_engine.executor.base import (
    ActionExecutionError,
    ActionExecutor,
    ActionRequest,
    ActionResult,
)
from task_engine.storage.common import utc_now
from task_engine.vault.codec import CredentialVault, VaultError
from task_engine.vault.repository import CredentialRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    idle_polls: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.timeouts += other.timeouts
        self.idle_polls += other.idle_polls


class TaskWorker:
    """Claims queued tasks and runs them through the action executor.

    One attempt moves through claimed -> executing -> succeeded/failed. Every
    failure is classified into a ``TaskFailure`` and handed to the retry
    policy; nothing raised by an attempt escapes ``run_once``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        executor: ActionExecutor,
        worker_id: str,
        events: EventLog | None = None,
        retry_policy: RetryPolicy | None = None,
        credentials: CredentialRepository | None = None,
        vault: CredentialVault | None = None,
        allow_legacy_credentials: bool = False,
        poll_interval_seconds: float = 4.0,
        stale_attempt_seconds: int = 0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.worker_id = worker_id
        self.events = events or EventLog(repository.engine)
        self.retry_policy = retry_policy or RetryPolicy()
        self.credentials = credentials
        self.vault = vault
        self.allow_legacy_credentials = allow_legacy_credentials
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_attempt_seconds = stale_attempt_seconds
        self.stop_event = stop_event or threading.Event()
        self._stop_signal_name: str | None = None
        self._abandoned_threads: list[threading.Thread] = []

    def request_stop(self) -> None:
        self.stop_event.set()

    @property
    def abandoned_actions(self) -> int:
        """Number of timed-out action threads that are still running."""

        self._abandoned_threads = [t for t in self._abandoned_threads if t.is_alive()]
        return len(self._abandoned_threads)

    def close(self) -> None:
        abandoned = self.abandoned_actions
        if abandoned:
            logger.warning(
                "Worker %s closing with %d timed-out action(s) still running",
                self.worker_id,
                abandoned,
            )
        self.repository.close()
        if self.credentials is not None:
            self.credentials.close()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self.stop_event.is_set():
            summary.idle_polls = 1
            return summary

        self._recover_stale_attempts()
        task = self.repository.claim_next_ready_task(worker_id=self.worker_id)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self.events.append(
            task.task_id,
            EventLevel.INFO,
            f"Task started (attempt {task.attempt_count}/{task.max_attempts})",
            {"worker_id": self.worker_id, "attempt": task.attempt_count},
            event_type="claimed",
            status_from=TaskStatus.QUEUED,
            status_to=TaskStatus.RUNNING,
        )

        try:
            result = self._execute(task)
        except TaskFailure as failure:
            outcome: ActionResult | TaskFailure = failure
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while running task %s", task.task_id)
            outcome = ExecutorFailure(f"Unexpected worker error: {error}")
        else:
            outcome = result

        try:
            if isinstance(outcome, ActionResult):
                self._persist_success(task=task, result=outcome, summary=summary)
            else:
                self._handle_failure(task=task, failure=outcome, summary=summary)
        except SQLAlchemyError:
            logger.exception(
                "Could not record outcome of task %s attempt %d; left for stale recovery",
                task.task_id,
                task.attempt_count,
            )
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Poll until stopped, idle for ``max_idle_polls`` or ``max_tasks`` processed.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls
                (None = keep polling until a stop is requested).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self.stop_event.is_set():
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break

                try:
                    summary = self.run_once()
                except Exception:  # noqa: BLE001
                    logger.exception("Worker %s poll failed", self.worker_id)
                    summary = WorkerRunSummary(idle_polls=1)
                aggregate.merge(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self.stop_event.wait(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

        if self._stop_signal_name is not None:
            logger.info("Worker %s stopped on %s", self.worker_id, self._stop_signal_name)
        return aggregate

    def _execute(self, task: TaskView) -> ActionResult:
        action_spec = resolve_action(task.action)
        if action_spec.kind not in self.executor.supported_actions:
            raise UnknownAction(f"Executor has no handler for action {action_spec.kind.value!r}")
        validate_parameters(action_spec, task.parameters)
        credential = self._resolve_credential(task) if action_spec.needs_credential else None

        request = ActionRequest(
            task_id=task.task_id,
            action=action_spec.kind,
            parameters=task.parameters,
            timeout_seconds=float(task.timeout_seconds),
            credential=credential,
        )
        return self._run_with_timeout(request)

    def _resolve_credential(self, task: TaskView) -> dict[str, Any]:
        if self.credentials is None or self.vault is None:
            raise CredentialUnavailable("Worker has no credential vault configured.")
        if not task.target_id:
            raise CredentialUnavailable("Task has no target_id to load a credential for.")

        try:
            payload = self.credentials.get_payload(
                target_id=task.target_id,
                owner_id=task.owner_id,
            )
        except SQLAlchemyError as error:
            raise CredentialUnavailable(f"Credential lookup failed: {error}") from error
        if payload is None:
            raise CredentialUnavailable(
                f"No credential stored for target {task.target_id} and owner {task.owner_id}.",
            )

        try:
            opened = self.vault.open_payload(payload, allow_legacy=self.allow_legacy_credentials)
        except VaultError as error:
            raise CredentialUnavailable(f"Credential could not be decrypted: {error}") from error

        if opened.legacy:
            self.events.append(
                task.task_id,
                EventLevel.WARN,
                "Legacy base64 credential used; migrate it to an envelope.",
                {"target_id": task.target_id},
                event_type="legacy_credential",
            )
        return opened.data

    def _run_with_timeout(self, request: ActionRequest) -> ActionResult:
        outcome: dict[str, Any] = {}

        with self.executor.session() as session:

            def _target() -> None:
                try:
                    outcome["result"] = session.run(request)
                except Exception as error:  # noqa: BLE001
                    outcome["error"] = error

            # Abandoned actions must not block interpreter exit.
            thread = threading.Thread(
                target=_target,
                name=f"{self.worker_id}-action-{request.task_id}",
                daemon=True,
            )
            thread.start()
            thread.join(request.timeout_seconds)
            if thread.is_alive():
                request.cancel_event.set()
                self._abandoned_threads.append(thread)
                raise ExecutionTimeout(
                    f"Action {request.action.value} exceeded {request.timeout_seconds:g}s timeout",
                )

        error = outcome.get("error")
        if isinstance(error, TaskFailure):
            raise error
        if isinstance(error, ActionExecutionError):
            raise ExecutorFailure(str(error), retryable=error.transient) from error
        if error is not None:
            raise ExecutorFailure(f"{type(error).__name__}: {error}") from error

        result = outcome.get("result")
        if not isinstance(result, ActionResult) or not isinstance(result.payload, dict):
            raise ExecutorFailure(
                f"Executor returned {type(result).__name__} instead of ActionResult",
                retryable=False,
            )
        try:
            encode_result(result.payload)
        except (TypeError, ValueError) as error:
            raise ExecutorFailure(
                f"Action result is not JSON serializable: {error}",
                retryable=False,
            ) from error
        return result

    def _persist_success(
        self,
        *,
        task: TaskView,
        result: ActionResult,
        summary: WorkerRunSummary,
    ) -> None:
        try:
            completed = self.repository.complete_task(
                task_id=task.task_id,
                attempt=task.attempt_count,
                result=result.payload,
            )
        except SQLAlchemyError as error:
            logger.exception("Storing result of task %s failed", task.task_id)
            self._handle_failure(
                task=task,
                failure=ExecutorFailure(f"Result could not be stored: {error}"),
                summary=summary,
            )
            return
        if not completed:
            logger.warning("Task %s changed state before its result was stored", task.task_id)
            self.events.append(
                task.task_id,
                EventLevel.WARN,
                "Result discarded: task is no longer running for this attempt.",
                {"attempt": task.attempt_count},
                event_type="result_discarded",
            )
            return

        summary.succeeded = 1
        self.events.append(
            task.task_id,
            EventLevel.INFO,
            "Task succeeded",
            {"attempt": task.attempt_count, "result": result.payload},
            event_type="succeeded",
            status_from=TaskStatus.RUNNING,
            status_to=TaskStatus.SUCCESS,
        )

    def _handle_failure(
        self,
        *,
        task: TaskView,
        failure: TaskFailure,
        summary: WorkerRunSummary,
    ) -> None:
        if failure.failure_class == FailureClass.TIMEOUT:
            summary.timeouts = 1
        decision = self.retry_policy.on_failure(task, failure)
        context = {**failure.to_event_context(), "attempt": task.attempt_count}

        if isinstance(decision, Requeue):
            self.events.append(
                task.task_id,
                EventLevel.WARN,
                f"Attempt {task.attempt_count} failed: {failure}",
                context,
                event_type="attempt_failed",
            )
            retried = self.repository.schedule_retry(
                task_id=task.task_id,
                attempt=task.attempt_count,
                next_run_at=decision.run_at,
                failure_class=failure.failure_class,
                error=str(failure),
            )
            if not retried:
                logger.warning("Task %s changed state before retry was scheduled", task.task_id)
                return
            summary.retried = 1
            self.events.append(
                task.task_id,
                EventLevel.WARN,
                f"Retrying at {decision.run_at.isoformat()}",
                {
                    "delay_seconds": decision.delay_seconds,
                    "next_run_at": decision.run_at.isoformat(),
                },
                event_type="retry_scheduled",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.QUEUED,
            )
            return

        self.events.append(
            task.task_id,
            EventLevel.ERROR,
            f"Attempt {task.attempt_count} failed: {failure}",
            context,
            event_type="attempt_failed",
        )
        failed = self.repository.fail_task(
            task_id=task.task_id,
            attempt=task.attempt_count,
            failure_class=failure.failure_class,
            error=decision.reason,
        )
        if not failed:
            logger.warning("Task %s changed state before it could be failed", task.task_id)
            return
        summary.failed = 1
        self.events.append(
            task.task_id,
            EventLevel.ERROR,
            decision.reason,
            {"failure_class": failure.failure_class.value, "attempt": task.attempt_count},
            event_type="terminal_failure",
            status_from=TaskStatus.RUNNING,
            status_to=TaskStatus.ERROR,
        )

    def _recover_stale_attempts(self) -> None:
        if self.stale_attempt_seconds <= 0:
            return
        now = utc_now()
        stale = self.repository.list_stale_running_tasks(
            stale_after=timedelta(seconds=self.stale_attempt_seconds),
        )
        for task in stale:
            started_at = task.started_at or now
            if now - started_at < timedelta(seconds=task.timeout_seconds):
                continue
            logger.warning(
                "Recovering stale attempt %d of task %s",
                task.attempt_count,
                task.task_id,
            )
            self._handle_failure(
                task=task,
                failure=ExecutionTimeout(
                    f"Attempt abandoned by worker {task.worker_id or 'unknown'}: "
                    f"no outcome after {self.stale_attempt_seconds}s",
                ),
                summary=WorkerRunSummary(),
            )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                self._stop_signal_name = signal.Signals(signum).name
            except ValueError:
                self._stop_signal_name = str(signum)
            self.stop_event.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
