from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from task_engine.engine.events import EventLog
from task_engine.engine.models import EventLevel, FailureClass, TaskCreate, TaskStatus
from task_engine.engine.repository import TaskRepository
from task_engine.storage.common import to_db_datetime
from task_engine.storage.sqlmodel_models import AgentTask

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Task Store & Claimer"),
]


def _enqueue(repository: TaskRepository, **overrides: object):
    payload = {
        "action": "scrape_dashboard",
        "owner_id": "user-1",
        "parameters": {"url": "https://example.com/dashboard"},
    }
    payload.update(overrides)
    return repository.enqueue_task(TaskCreate(**payload))  # type: ignore[arg-type]


def test_enqueue_creates_queued_task_with_defaults(task_repository: TaskRepository) -> None:
    task = _enqueue(task_repository)

    assert task.status == TaskStatus.QUEUED
    assert task.attempt_count == 0
    assert task.max_attempts == 1
    assert task.timeout_seconds == 60
    assert task.next_run_at == task.scheduled_for
    assert task.parameters == {"url": "https://example.com/dashboard"}
    assert task.worker_id is None
    assert not task.is_terminal


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"max_attempts": 0}, "max_attempts"),
        ({"timeout_seconds": 0}, "timeout_seconds"),
        ({"owner_id": "  "}, "owner_id"),
    ],
)
def test_enqueue_rejects_invalid_payload(
    task_repository: TaskRepository,
    overrides: dict[str, object],
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        _enqueue(task_repository, **overrides)


def test_claim_marks_task_running_and_increments_attempt(task_repository: TaskRepository) -> None:
    task = _enqueue(task_repository, max_attempts=3)

    claimed = task_repository.claim_next_ready_task(worker_id="worker-a")

    assert claimed is not None
    assert claimed.task_id == task.task_id
    assert claimed.status == TaskStatus.RUNNING
    assert claimed.attempt_count == 1
    assert claimed.worker_id == "worker-a"
    assert claimed.started_at is not None
    assert task_repository.claim_next_ready_task(worker_id="worker-b") is None


def test_claim_skips_future_tasks(task_repository: TaskRepository) -> None:
    _enqueue(task_repository, scheduled_for=datetime.now(tz=UTC) + timedelta(hours=1))

    assert task_repository.claim_next_ready_task(worker_id="worker-a") is None


def test_claim_orders_by_next_run_at_then_insertion(task_repository: TaskRepository) -> None:
    now = datetime.now(tz=UTC)
    later = _enqueue(task_repository, scheduled_for=now - timedelta(seconds=5))
    earliest = _enqueue(task_repository, scheduled_for=now - timedelta(seconds=30))
    tie_first = _enqueue(task_repository, scheduled_for=now - timedelta(seconds=10))
    tie_second = _enqueue(task_repository, scheduled_for=now - timedelta(seconds=10))

    claimed_ids = []
    while (claimed := task_repository.claim_next_ready_task(worker_id="worker-a")) is not None:
        claimed_ids.append(claimed.task_id)

    assert claimed_ids == [
        earliest.task_id,
        tie_first.task_id,
        tie_second.task_id,
        later.task_id,
    ]


def test_transitions_are_guarded_by_attempt_number(task_repository: TaskRepository) -> None:
    task = _enqueue(task_repository, max_attempts=2)
    claimed = task_repository.claim_next_ready_task(worker_id="worker-a")
    assert claimed is not None

    assert not task_repository.complete_task(task_id=task.task_id, attempt=2, result={"x": 1})
    assert task_repository.schedule_retry(
        task_id=task.task_id,
        attempt=1,
        next_run_at=datetime.now(tz=UTC) - timedelta(seconds=1),
        failure_class=FailureClass.EXECUTOR_FAILURE,
        error="boom",
    )

    requeued = task_repository.get_task(task_id=task.task_id)
    assert requeued is not None
    assert requeued.status == TaskStatus.QUEUED
    assert requeued.worker_id is None
    assert requeued.failure_class == FailureClass.EXECUTOR_FAILURE

    reclaimed = task_repository.claim_next_ready_task(worker_id="worker-b")
    assert reclaimed is not None
    assert reclaimed.attempt_count == 2
    # A late result from attempt 1 must not overwrite attempt 2.
    assert not task_repository.complete_task(task_id=task.task_id, attempt=1, result={"x": 1})
    assert task_repository.complete_task(task_id=task.task_id, attempt=2, result={"x": 2})

    finished = task_repository.get_task(task_id=task.task_id)
    assert finished is not None
    assert finished.status == TaskStatus.SUCCESS
    assert finished.result == {"x": 2}
    assert finished.failure_class is None
    assert finished.finished_at is not None


def test_terminal_states_are_immutable(task_repository: TaskRepository) -> None:
    task = _enqueue(task_repository)
    assert task_repository.claim_next_ready_task(worker_id="worker-a") is not None
    assert task_repository.fail_task(
        task_id=task.task_id,
        attempt=1,
        failure_class=FailureClass.UNKNOWN_ACTION,
        error="nope",
    )

    assert not task_repository.complete_task(task_id=task.task_id, attempt=1, result={})
    assert not task_repository.fail_task(
        task_id=task.task_id,
        attempt=1,
        failure_class=FailureClass.TIMEOUT,
        error="again",
    )
    assert not task_repository.schedule_retry(
        task_id=task.task_id,
        attempt=1,
        next_run_at=datetime.now(tz=UTC),
        failure_class=FailureClass.TIMEOUT,
        error="again",
    )
    assert task_repository.claim_next_ready_task(worker_id="worker-b") is None

    stored = task_repository.get_task(task_id=task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.ERROR
    assert stored.error == "nope"
    assert stored.failure_class == FailureClass.UNKNOWN_ACTION


def test_list_tasks_filters_by_status_and_owner(task_repository: TaskRepository) -> None:
    first = _enqueue(task_repository, owner_id="alice")
    _enqueue(task_repository, owner_id="bob")
    task_repository.claim_next_ready_task(worker_id="worker-a")

    running = task_repository.list_tasks(status=TaskStatus.RUNNING)
    assert [task.task_id for task in running] == [first.task_id]
    assert [task.owner_id for task in task_repository.list_tasks(owner_id="bob")] == ["bob"]
    assert len(task_repository.list_tasks(limit=1)) == 1


def test_list_stale_running_tasks_uses_started_at(task_repository: TaskRepository) -> None:
    task = _enqueue(task_repository)
    assert task_repository.claim_next_ready_task(worker_id="crashed") is not None
    assert task_repository.list_stale_running_tasks(stale_after=timedelta(minutes=5)) == []

    with Session(task_repository.engine) as session:
        session.exec(
            sa_update(AgentTask)
            .where(col(AgentTask.task_id) == task.task_id)
            .values(started_at=to_db_datetime(datetime.now(tz=UTC) - timedelta(hours=1))),
        )
        session.commit()

    stale = task_repository.list_stale_running_tasks(stale_after=timedelta(minutes=5))
    assert [item.task_id for item in stale] == [task.task_id]


def test_task_details_include_events_in_order(task_repository: TaskRepository) -> None:
    task = _enqueue(task_repository)
    events = EventLog(task_repository.engine)
    events.append(task.task_id, EventLevel.INFO, "first", event_type="enqueued")
    events.append(task.task_id, EventLevel.WARN, "second", {"k": "v"}, event_type="note")

    details = task_repository.get_task_details(task_id=task.task_id)

    assert details is not None
    assert [event.message for event in details.events] == ["first", "second"]
    assert details.events[1].context == {"k": "v"}
    assert task_repository.get_task_details(task_id="missing") is None


def test_concurrent_claims_never_hand_out_a_task_twice(db_path: Path) -> None:
    setup = TaskRepository(db_path)
    setup.init_schema()
    task_ids = {_enqueue(setup).task_id for _ in range(20)}
    setup.close()

    worker_count = 6
    barrier = threading.Barrier(worker_count)
    claimed: list[tuple[str, str]] = []
    claimed_lock = threading.Lock()
    errors: list[BaseException] = []

    def _claim_all(worker_id: str) -> None:
        repository = TaskRepository(db_path, claim_contention_retries=50)
        try:
            barrier.wait(timeout=5)
            idle = 0
            while idle < 3:
                task = repository.claim_next_ready_task(worker_id=worker_id)
                if task is None:
                    idle += 1
                    continue
                idle = 0
                with claimed_lock:
                    claimed.append((task.task_id, worker_id))
        except BaseException as error:  # noqa: BLE001
            errors.append(error)
        finally:
            repository.close()

    threads = [
        threading.Thread(target=_claim_all, args=(f"worker-{index}",))
        for index in range(worker_count)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    claimed_task_ids = [task_id for task_id, _ in claimed]
    assert len(claimed_task_ids) == len(set(claimed_task_ids))
    assert set(claimed_task_ids) == task_ids

    verify = TaskRepository(db_path)
    try:
        running = verify.list_tasks(status=TaskStatus.RUNNING, limit=100)
        assert len(running) == len(task_ids)
        assert all(task.attempt_count == 1 for task in running)
        owners = dict(claimed)
        assert all(task.worker_id == owners[task.task_id] for task in running)
    finally:
        verify.close()
