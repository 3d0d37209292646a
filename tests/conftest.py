"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from task_engine.engine.actions import ActionKind
from task_engine.engine.repository import TaskRepository
from task_engine.engine.retry import RetryPolicy
from task_engine.engine.worker import TaskWorker
from task_engine.executor.base import ActionRequest, ActionResult
from task_engine.vault.codec import CredentialVault, generate_private_key
from task_engine.vault.repository import CredentialRepository


class FakeSession:
    def __init__(self, executor: FakeExecutor) -> None:
        self.executor = executor

    def run(self, request: ActionRequest) -> ActionResult:
        self.executor.requests.append(request)
        return self.executor.handler(request)


class FakeExecutor:
    """In-memory executor that records sessions and requests."""

    supported_actions = frozenset(ActionKind)

    def __init__(self, handler: Callable[[ActionRequest], ActionResult] | None = None) -> None:
        self.handler = handler or (
            lambda request: ActionResult(payload={"ok": True, "task_id": request.task_id})
        )
        self.requests: list[ActionRequest] = []
        self.opened = 0
        self.closed = 0

    @contextmanager
    def session(self) -> Iterator[FakeSession]:
        self.opened += 1
        try:
            yield FakeSession(self)
        finally:
            self.closed += 1


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return generate_private_key()


@pytest.fixture(scope="session")
def other_private_key() -> rsa.RSAPrivateKey:
    return generate_private_key()


@pytest.fixture()
def vault(rsa_private_key: rsa.RSAPrivateKey) -> CredentialVault:
    return CredentialVault(rsa_private_key)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "engine.db"


@pytest.fixture()
def task_repository(db_path: Path) -> Iterator[TaskRepository]:
    repository = TaskRepository(db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def credential_repository(
    db_path: Path,
    task_repository: TaskRepository,
) -> Iterator[CredentialRepository]:
    repository = CredentialRepository(db_path)
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def fake_executor() -> type[FakeExecutor]:
    return FakeExecutor


@pytest.fixture()
def make_worker(
    task_repository: TaskRepository,
    credential_repository: CredentialRepository,
    vault: CredentialVault,
) -> Callable[..., TaskWorker]:
    """Build a worker with zero retry delay against the shared test database."""

    def _make(executor: FakeExecutor, **overrides: object) -> TaskWorker:
        options: dict[str, object] = {
            "repository": task_repository,
            "executor": executor,
            "worker_id": "worker-test",
            "retry_policy": RetryPolicy(base_delay_seconds=0, max_delay_seconds=0),
            "credentials": credential_repository,
            "vault": vault,
            "poll_interval_seconds": 0.01,
        }
        options.update(overrides)
        return TaskWorker(**options)  # type: ignore[arg-type]

    return _make
