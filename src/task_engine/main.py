"""CLI entrypoint for task-engine."""

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import rich_click as click

from task_engine import __version__
from task_engine.engine.actions import ActionKind
from task_engine.engine.controllers import (
    TaskCliController,
    TaskEnqueueCommand,
    TaskInspectCommand,
    TaskListCommand,
    WorkerRunCommand,
)
from task_engine.vault.codec import DEFAULT_RSA_KEY_BITS
from task_engine.vault.controllers import (
    VaultCliController,
    VaultKeygenCommand,
    VaultMigrateCommand,
    VaultStoreCredentialCommand,
)

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()
VAULT_CONTROLLER = VaultCliController()


@click.group()
@click.version_option(version=__version__, prog_name="task-engine")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logger level.",
)
def task_engine(log_level: str) -> None:
    """Agent task execution engine CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_engine.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--action",
    type=click.Choice([kind.value for kind in ActionKind], case_sensitive=False),
    required=True,
    help="Action to run.",
)
@click.option("--owner-id", required=True, help="User who owns the task.")
@click.option("--target-id", default=None, help="Integration whose credential the action uses.")
@click.option(
    "--params",
    "parameters_json",
    default="{}",
    show_default=True,
    help="Action parameters as a JSON object.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Max execution attempts.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Per-attempt timeout (defaults to TASK_ENGINE_DEFAULT_TIMEOUT_SECONDS).",
)
@click.option(
    "--scheduled-for",
    type=click.DateTime(),
    default=None,
    help="Earliest run time (UTC when no offset is given).",
)
def tasks_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    action: str,
    owner_id: str,
    target_id: str | None,
    parameters_json: str,
    max_attempts: int,
    timeout_seconds: int | None,
    scheduled_for: datetime | None,
) -> None:
    """Enqueue one agent task."""

    _run(
        lambda: TASK_CONTROLLER.enqueue(
            TaskEnqueueCommand(
                db_path=db_path,
                action=action.lower(),
                owner_id=owner_id,
                parameters_json=parameters_json,
                target_id=target_id,
                max_attempts=max_attempts,
                timeout_seconds=timeout_seconds,
                scheduled_for=scheduled_for,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["queued", "running", "success", "error"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--owner-id", default=None, help="Optional owner filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    owner_id: str | None,
    limit: int,
) -> None:
    """List queued and finished tasks."""

    _run(
        lambda: TASK_CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                status=status,
                owner_id=owner_id,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its event history."""

    _run(
        lambda: TASK_CONTROLLER.inspect_task(
            TaskInspectCommand(
                db_path=db_path,
                task_id=task_id,
            ),
        ),
    )


@task_engine.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or keep polling.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks per worker in loop mode.",
)
@click.option(
    "--pool-size",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads in loop mode (defaults to TASK_ENGINE_POOL_SIZE).",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive empty polls (default: run until signalled).",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    pool_size: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the task worker."""

    _run(
        lambda: TASK_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                pool_size=pool_size,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@task_engine.group()
def vault() -> None:
    """Credential vault commands."""


@vault.command("keygen")
@click.option(
    "--out",
    "private_key_path",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="Where to write the private key PEM.",
)
@click.option(
    "--passphrase",
    default=None,
    envvar="TASK_ENGINE_RSA_PRIVATE_KEY_PASSPHRASE",
    help="Optional passphrase for the private key.",
)
@click.option(
    "--bits",
    type=click.Choice(["2048", "3072", "4096"]),
    default=str(DEFAULT_RSA_KEY_BITS),
    show_default=True,
    help="RSA modulus size.",
)
@click.option("--overwrite", is_flag=True, default=False, help="Replace an existing key file.")
def vault_keygen(
    private_key_path: Path,
    passphrase: str | None,
    bits: str,
    overwrite: bool,
) -> None:
    """Generate a vault RSA key pair and print the public key."""

    _run(
        lambda: VAULT_CONTROLLER.keygen(
            VaultKeygenCommand(
                private_key_path=private_key_path,
                passphrase=passphrase,
                bits=int(bits),
                overwrite=overwrite,
            ),
        ),
    )


@vault.command("public-key")
def vault_public_key() -> None:
    """Print the public key PEM of the configured vault private key."""

    _run(VAULT_CONTROLLER.public_key)


@vault.command("store-credential")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--target-id", required=True, help="Integration id.")
@click.option("--owner-id", required=True, help="User who owns the credential.")
@click.option(
    "--secret",
    "secret_json",
    prompt="Credential JSON",
    hide_input=True,
    help="Credential fields as a JSON object, e.g. {\"username\": ..., \"password\": ...}.",
)
def vault_store_credential(
    db_path: Path | None,
    target_id: str,
    owner_id: str,
    secret_json: str,
) -> None:
    """Seal a credential with the vault public key and store it."""

    _run(
        lambda: VAULT_CONTROLLER.store_credential(
            VaultStoreCredentialCommand(
                db_path=db_path,
                target_id=target_id,
                owner_id=owner_id,
                secret_json=secret_json,
            ),
        ),
    )


@vault.command("migrate-legacy")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def vault_migrate_legacy(db_path: Path | None) -> None:
    """Re-encrypt legacy base64 credentials as envelopes."""

    _run(lambda: VAULT_CONTROLLER.migrate_legacy(VaultMigrateCommand(db_path=db_path)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_engine()
