"""Controllers for credential vault CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives.asymmetric import rsa

from task_engine.config import Settings
from task_engine.vault.codec import (
    DEFAULT_RSA_KEY_BITS,
    CredentialVault,
    generate_private_key,
    private_key_to_pem,
    public_key_to_pem,
)
from task_engine.vault.public_key import PublicKeyClient
from task_engine.vault.repository import CredentialRepository
from task_engine.vault.services import CredentialService


@dataclass(slots=True)
class VaultKeygenCommand:
    """CLI input for RSA key pair generation."""

    private_key_path: Path
    passphrase: str | None
    bits: int = DEFAULT_RSA_KEY_BITS
    overwrite: bool = False


@dataclass(slots=True)
class VaultStoreCredentialCommand:
    """CLI input for sealing and storing one credential."""

    db_path: Path | None
    target_id: str
    owner_id: str
    secret_json: str


@dataclass(slots=True)
class VaultMigrateCommand:
    """CLI input for legacy credential migration."""

    db_path: Path | None


class VaultCliController:
    """Coordinates key management and credential provisioning CLI operations."""

    def keygen(self, command: VaultKeygenCommand) -> list[str]:
        if command.private_key_path.exists() and not command.overwrite:
            raise ValueError(
                f"Refusing to overwrite existing key file: {command.private_key_path}. "
                "Pass --overwrite to replace it.",
            )
        key = generate_private_key(command.bits)
        command.private_key_path.parent.mkdir(parents=True, exist_ok=True)
        command.private_key_path.write_text(
            private_key_to_pem(key, command.passphrase),
            "utf-8",
        )
        command.private_key_path.chmod(0o600)
        return [
            f"Private key written: {command.private_key_path} (bits={command.bits})",
            *public_key_to_pem(key.public_key()).splitlines(),
        ]

    def public_key(self) -> list[str]:
        settings = Settings.from_env()
        vault = _require_vault(settings)
        return vault.public_key_pem().splitlines()

    def store_credential(self, command: VaultStoreCredentialCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        secret = _parse_secret(command.secret_json)
        public_key = _resolve_public_key(settings)
        with _repository(settings) as repository:
            CredentialService(repository=repository, public_key=public_key).store_credential(
                target_id=command.target_id,
                owner_id=command.owner_id,
                secret=secret,
            )
        return [
            "Credential stored: "
            f"target_id={command.target_id} owner_id={command.owner_id} fields={len(secret)}",
        ]

    def migrate_legacy(self, command: VaultMigrateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        public_key = _resolve_public_key(settings)
        with _repository(settings) as repository:
            report = CredentialService(
                repository=repository,
                public_key=public_key,
            ).migrate_legacy()

        lines = [
            "Legacy migration: "
            f"migrated={report.migrated} already_sealed={report.already_sealed} "
            f"failed={len(report.failed)}",
        ]
        lines.extend(f"  failed: {label}" for label in report.failed)
        return lines


def _require_vault(settings: Settings) -> CredentialVault:
    return CredentialVault.from_pem(
        settings.vault.read_private_key_pem(),
        settings.vault.private_key_passphrase,
    )


def _resolve_public_key(settings: Settings) -> rsa.RSAPublicKey:
    if settings.vault.public_key_url:
        with PublicKeyClient(
            settings.vault.public_key_url,
            timeout_seconds=settings.executor.http_timeout_seconds,
        ) as client:
            return client.fetch()
    if settings.vault.has_private_key():
        return _require_vault(settings).public_key
    raise ValueError(
        "No vault public key available. Set TASK_ENGINE_RSA_PUBLIC_KEY_URL, "
        "TASK_ENGINE_RSA_PRIVATE_KEY or TASK_ENGINE_RSA_PRIVATE_KEY_PATH.",
    )


def _parse_secret(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"--secret must be a JSON object: {error}") from error
    if not isinstance(parsed, dict) or not parsed:
        raise ValueError("--secret must be a non-empty JSON object.")
    return parsed


@contextmanager
def _repository(settings: Settings) -> Iterator[CredentialRepository]:
    repository = CredentialRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
