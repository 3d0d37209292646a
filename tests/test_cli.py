from __future__ import annotations

import base64
import json
import re
from pathlib import Path

import allure
import httpx
import pytest
from click.testing import CliRunner

from task_engine.engine import controllers
from task_engine.executor.http_executor import HttpActionExecutor
from task_engine.main import task_engine
from task_engine.vault.repository import CredentialRepository

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("CLI"),
]

DASHBOARD_HTML = "<html><body><p id='total'>42 open tickets</p></body></html>"


@pytest.fixture()
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    for name in (
        "TASK_ENGINE_RSA_PRIVATE_KEY",
        "TASK_ENGINE_RSA_PRIVATE_KEY_PATH",
        "TASK_ENGINE_RSA_PRIVATE_KEY_PASSPHRASE",
        "TASK_ENGINE_RSA_PUBLIC_KEY_URL",
        "TASK_ENGINE_VAULT_ALLOW_LEGACY_PLAINTEXT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TASK_ENGINE_WORKER_ID", "cli-worker")
    monkeypatch.setenv("TASK_ENGINE_STALE_ATTEMPT_SECONDS", "0")
    monkeypatch.setenv("TASK_ENGINE_POLL_INTERVAL_SECONDS", "0.05")

    transport = httpx.MockTransport(lambda _: httpx.Response(200, html=DASHBOARD_HTML))
    monkeypatch.setattr(
        controllers,
        "HttpActionExecutor",
        lambda **kwargs: HttpActionExecutor(transport=transport, **kwargs),
    )
    return tmp_path


def _keygen(runner: CliRunner, key_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    result = runner.invoke(task_engine, ["vault", "keygen", "--out", str(key_path)])
    assert result.exit_code == 0, result.output
    assert "BEGIN PUBLIC KEY" in result.output
    monkeypatch.setenv("TASK_ENGINE_RSA_PRIVATE_KEY_PATH", str(key_path))


def test_cli_provisions_credential_and_runs_login_task(
    cli_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    runner = CliRunner()
    db_path = cli_env / "cli.db"
    _keygen(runner, cli_env / "vault.pem", monkeypatch)

    public_key = runner.invoke(task_engine, ["vault", "public-key"])
    assert public_key.exit_code == 0, public_key.output
    assert public_key.output.startswith("-----BEGIN PUBLIC KEY-----")

    stored = runner.invoke(
        task_engine,
        [
            "vault",
            "store-credential",
            "--db-path",
            str(db_path),
            "--target-id",
            "helpdesk",
            "--owner-id",
            "alice",
            "--secret",
            json.dumps({"username": "alice", "password": "pw"}),
        ],
    )
    assert stored.exit_code == 0, stored.output
    assert "Credential stored" in stored.output

    enqueued = runner.invoke(
        task_engine,
        [
            "tasks",
            "enqueue",
            "--db-path",
            str(db_path),
            "--action",
            "login_and_scrape",
            "--owner-id",
            "alice",
            "--target-id",
            "helpdesk",
            "--params",
            json.dumps(
                {
                    "url": "https://helpdesk.example.com/",
                    "login_url": "https://helpdesk.example.com/login",
                    "selector": "#total",
                },
            ),
        ],
    )
    assert enqueued.exit_code == 0, enqueued.output
    match = re.search(r"task_id=(\S+)", enqueued.output)
    assert match is not None
    task_id = match.group(1)

    worker = runner.invoke(task_engine, ["worker", "run", "--db-path", str(db_path), "--once"])
    assert worker.exit_code == 0, worker.output
    assert "processed=1 succeeded=1" in worker.output

    inspected = runner.invoke(
        task_engine,
        ["tasks", "inspect", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert inspected.exit_code == 0, inspected.output
    assert "Status: success" in inspected.output
    assert "42 open tickets" in inspected.output
    assert "password" not in inspected.output
    for event_type in ("enqueued", "claimed", "succeeded"):
        assert event_type in inspected.output

    listed = runner.invoke(
        task_engine,
        ["tasks", "list", "--db-path", str(db_path), "--status", "success"],
    )
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1" in listed.output
    assert task_id in listed.output


def test_cli_migrate_legacy_credentials(cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    db_path = cli_env / "legacy.db"
    _keygen(runner, cli_env / "vault.pem", monkeypatch)
    repository = CredentialRepository(db_path)
    repository.init_schema()
    repository.upsert_credential(
        target_id="crm",
        owner_id="bob",
        payload=base64.b64encode(b'{"username": "bob", "password": "pw"}').decode(),
    )
    repository.close()

    result = runner.invoke(task_engine, ["vault", "migrate-legacy", "--db-path", str(db_path)])

    assert result.exit_code == 0, result.output
    assert "migrated=1 already_sealed=0 failed=0" in result.output


def test_cli_enqueue_rejects_non_object_params(cli_env: Path) -> None:
    result = CliRunner().invoke(
        task_engine,
        [
            "tasks",
            "enqueue",
            "--db-path",
            str(cli_env / "cli.db"),
            "--action",
            "scrape_dashboard",
            "--owner-id",
            "alice",
            "--params",
            "[]",
        ],
    )

    assert result.exit_code == 1
    assert "JSON object" in result.output


def test_cli_enqueue_requires_target_for_login_action(cli_env: Path) -> None:
    result = CliRunner().invoke(
        task_engine,
        [
            "tasks",
            "enqueue",
            "--db-path",
            str(cli_env / "cli.db"),
            "--action",
            "login_and_scrape",
            "--owner-id",
            "alice",
            "--params",
            json.dumps({"url": "https://a.example/", "login_url": "https://a.example/login"}),
        ],
    )

    assert result.exit_code == 1
    assert "target_id" in result.output


def test_cli_public_key_without_configured_key_fails(cli_env: Path) -> None:
    result = CliRunner().invoke(task_engine, ["vault", "public-key"])

    assert result.exit_code == 1
    assert "not configured" in result.output


def test_cli_worker_loop_with_pool(cli_env: Path) -> None:
    runner = CliRunner()
    db_path = cli_env / "pool.db"
    for index in range(4):
        enqueued = runner.invoke(
            task_engine,
            [
                "tasks",
                "enqueue",
                "--db-path",
                str(db_path),
                "--action",
                "scrape_dashboard",
                "--owner-id",
                "alice",
                "--params",
                json.dumps({"url": f"https://a.example/{index}", "selector": "#total"}),
            ],
        )
        assert enqueued.exit_code == 0, enqueued.output

    result = runner.invoke(
        task_engine,
        [
            "worker",
            "run",
            "--db-path",
            str(db_path),
            "--loop",
            "--pool-size",
            "2",
            "--max-idle-polls",
            "2",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "processed=4 succeeded=4" in result.output
