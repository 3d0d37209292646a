"""Controllers for task queue and worker CLI commands."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from task_engine.config import Settings
from task_engine.engine.events import EventLog
from task_engine.engine.models import TaskStatus
from task_engine.engine.pool import WorkerPool
from task_engine.engine.repository import TaskRepository
from task_engine.engine.retry import RetryPolicy
from task_engine.engine.services import EnqueueTask, TaskService
from task_engine.engine.worker import TaskWorker, WorkerRunSummary
from task_engine.executor.http_executor import HttpActionExecutor
from task_engine.vault.codec import CredentialVault
from task_engine.vault.repository import CredentialRepository


@dataclass(slots=True)
class TaskEnqueueCommand:
    """CLI input for task enqueue."""

    db_path: Path | None
    action: str
    owner_id: str
    parameters_json: str
    target_id: str | None
    max_attempts: int
    timeout_seconds: int | None
    scheduled_for: datetime | None = None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    owner_id: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    pool_size: int | None = None
    max_idle_polls: int | None = 1


class TaskCliController:
    """Coordinates queue, worker, and inspection CLI operations."""

    def enqueue(self, command: TaskEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        parameters = _parse_parameters(command.parameters_json)
        with _repository(settings) as repository:
            task = TaskService(repository=repository).enqueue(
                EnqueueTask(
                    action=command.action,
                    owner_id=command.owner_id,
                    parameters=parameters,
                    target_id=command.target_id,
                    max_attempts=command.max_attempts,
                    timeout_seconds=(
                        command.timeout_seconds or settings.worker.default_timeout_seconds
                    ),
                    scheduled_for=command.scheduled_for,
                ),
            )

        return [
            "Task enqueued: "
            f"task_id={task.task_id} action={task.action} status={task.status.value} "
            f"next_run_at={task.next_run_at.isoformat()}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                owner_id=command.owner_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} action={task.action} status={task.status.value} "
                f"owner={task.owner_id} attempt={task.attempt_count}/{task.max_attempts} "
                f"next_run_at={task.next_run_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Action: {task.action}",
            f"Owner: {task.owner_id}",
            f"Target: {task.target_id or '-'}",
            f"Status: {task.status.value}",
            f"Attempt: {task.attempt_count}/{task.max_attempts}",
            f"Worker: {task.worker_id or '-'}",
            f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
            f"Error: {task.error or '-'}",
            f"Result: {json.dumps(task.result, ensure_ascii=False) if task.result else '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} [{event.level.value}] {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'} {event.message}",
            )
        return lines

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        vault = _load_vault(settings)
        pool_size = command.pool_size or settings.worker.pool_size

        if command.once or pool_size == 1:
            worker = build_worker(
                settings,
                worker_id=settings.worker.worker_id,
                vault=vault,
            )
            try:
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(
                        max_tasks=command.max_tasks,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
            finally:
                worker.close()
        else:
            pool = WorkerPool(
                size=pool_size,
                worker_factory=lambda worker_id, stop_event: build_worker(
                    settings,
                    worker_id=worker_id,
                    vault=vault,
                    stop_event=stop_event,
                ),
                worker_id_prefix=settings.worker.worker_id,
            )
            summary = pool.run(
                max_tasks_per_worker=command.max_tasks,
                max_idle_polls=command.max_idle_polls,
            )

        return [_summary_line(summary)]


def build_worker(
    settings: Settings,
    *,
    worker_id: str,
    vault: CredentialVault | None,
    stop_event: threading.Event | None = None,
) -> TaskWorker:
    """Wire one worker with its own repository connections."""

    repository = TaskRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    credentials = CredentialRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    return TaskWorker(
        repository=repository,
        executor=HttpActionExecutor(
            timeout_seconds=settings.executor.http_timeout_seconds,
            user_agent=settings.executor.http_user_agent,
            max_text_chars=settings.executor.max_text_chars,
        ),
        worker_id=worker_id,
        events=EventLog(repository.engine),
        retry_policy=RetryPolicy(
            base_delay_seconds=settings.worker.retry_base_seconds,
            max_delay_seconds=settings.worker.retry_max_seconds,
        ),
        credentials=credentials,
        vault=vault,
        allow_legacy_credentials=settings.vault.allow_legacy_plaintext,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        stale_attempt_seconds=settings.worker.stale_attempt_seconds,
        stop_event=stop_event,
    )


def _load_vault(settings: Settings) -> CredentialVault | None:
    if not settings.vault.has_private_key():
        return None
    return CredentialVault.from_pem(
        settings.vault.read_private_key_pem(),
        settings.vault.private_key_passphrase,
    )


def _summary_line(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} "
        f"timeouts={summary.timeouts} idle_polls={summary.idle_polls}"
    )


def _parse_parameters(raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"--params must be a JSON object: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError("--params must be a JSON object.")
    return parsed


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
