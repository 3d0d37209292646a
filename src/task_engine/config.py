"""Runtime configuration for the task queue, worker and credential vault."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop and retry settings."""

    worker_id: str = ""
    poll_interval_seconds: float = 4.0
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 3_600.0
    stale_attempt_seconds: int = 900
    pool_size: int = 1
    default_timeout_seconds: int = 60


@dataclass(slots=True)
class VaultSettings:
    """Credential vault key material and legacy handling."""

    private_key_pem: str | None = None
    private_key_path: Path | None = None
    private_key_passphrase: str | None = None
    public_key_url: str | None = None
    allow_legacy_plaintext: bool = False

    def has_private_key(self) -> bool:
        return bool(self.private_key_pem) or self.private_key_path is not None

    def read_private_key_pem(self) -> str:
        """Return the configured private key PEM, reading the key file if needed."""

        if self.private_key_pem:
            return self.private_key_pem
        if self.private_key_path is None:
            raise ValueError(
                "Vault private key is not configured. "
                "Set TASK_ENGINE_RSA_PRIVATE_KEY or TASK_ENGINE_RSA_PRIVATE_KEY_PATH.",
            )
        try:
            return self.private_key_path.read_text(encoding="utf-8")
        except OSError as error:
            raise ValueError(
                f"Cannot read TASK_ENGINE_RSA_PRIVATE_KEY_PATH {str(self.private_key_path)!r}: "
                f"{error}",
            ) from error


@dataclass(slots=True)
class ExecutorSettings:
    """HTTP action executor settings."""

    http_timeout_seconds: float = 30.0
    http_user_agent: str = "Mozilla/5.0 (compatible; TaskEngineWorker/0.1)"
    max_text_chars: int = 20_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".task_engine.db")
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    vault: VaultSettings = field(default_factory=VaultSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        key_path = os.getenv("TASK_ENGINE_RSA_PRIVATE_KEY_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("TASK_ENGINE_DB_PATH", ".task_engine.db")),
            sqlite_busy_timeout_ms=_env_int("TASK_ENGINE_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            worker=WorkerSettings(
                worker_id=os.getenv("TASK_ENGINE_WORKER_ID", "").strip() or _default_worker_id(),
                poll_interval_seconds=_env_float("TASK_ENGINE_POLL_INTERVAL_SECONDS", 4.0),
                retry_base_seconds=_env_float("TASK_ENGINE_RETRY_BASE_SECONDS", 5.0),
                retry_max_seconds=_env_float("TASK_ENGINE_RETRY_MAX_SECONDS", 3_600.0),
                stale_attempt_seconds=_env_int("TASK_ENGINE_STALE_ATTEMPT_SECONDS", 900),
                pool_size=_env_int("TASK_ENGINE_POOL_SIZE", 1),
                default_timeout_seconds=_env_int("TASK_ENGINE_DEFAULT_TIMEOUT_SECONDS", 60),
            ),
            vault=VaultSettings(
                private_key_pem=os.getenv("TASK_ENGINE_RSA_PRIVATE_KEY") or None,
                private_key_path=Path(key_path) if key_path else None,
                private_key_passphrase=os.getenv("TASK_ENGINE_RSA_PRIVATE_KEY_PASSPHRASE") or None,
                public_key_url=os.getenv("TASK_ENGINE_RSA_PUBLIC_KEY_URL", "").strip() or None,
                allow_legacy_plaintext=_env_bool(
                    "TASK_ENGINE_VAULT_ALLOW_LEGACY_PLAINTEXT",
                    default=False,
                ),
            ),
            executor=ExecutorSettings(
                http_timeout_seconds=_env_float("TASK_ENGINE_HTTP_TIMEOUT_SECONDS", 30.0),
                http_user_agent=os.getenv(
                    "TASK_ENGINE_HTTP_USER_AGENT",
                    "Mozilla/5.0 (compatible; TaskEngineWorker/0.1)",
                ),
                max_text_chars=_env_int("TASK_ENGINE_HTTP_MAX_TEXT_CHARS", 20_000),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker settings are out of range."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("TASK_ENGINE_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if not self.worker.worker_id:
            raise ValueError("TASK_ENGINE_WORKER_ID must not be empty.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("TASK_ENGINE_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.retry_base_seconds < 0:
            raise ValueError("TASK_ENGINE_RETRY_BASE_SECONDS must be >= 0.")
        if self.worker.retry_max_seconds < self.worker.retry_base_seconds:
            raise ValueError(
                "TASK_ENGINE_RETRY_MAX_SECONDS must be >= TASK_ENGINE_RETRY_BASE_SECONDS.",
            )
        if self.worker.stale_attempt_seconds < 0:
            raise ValueError("TASK_ENGINE_STALE_ATTEMPT_SECONDS must be >= 0.")
        if self.worker.pool_size <= 0:
            raise ValueError("TASK_ENGINE_POOL_SIZE must be a positive integer.")
        if self.worker.default_timeout_seconds <= 0:
            raise ValueError("TASK_ENGINE_DEFAULT_TIMEOUT_SECONDS must be > 0.")
        if self.executor.http_timeout_seconds <= 0:
            raise ValueError("TASK_ENGINE_HTTP_TIMEOUT_SECONDS must be > 0.")
        if self.vault.private_key_pem and self.vault.private_key_path is not None:
            raise ValueError(
                "Set only one of TASK_ENGINE_RSA_PRIVATE_KEY and TASK_ENGINE_RSA_PRIVATE_KEY_PATH.",
            )
        if self.vault.private_key_path is not None and not self.vault.private_key_path.is_file():
            raise ValueError(
                "TASK_ENGINE_RSA_PRIVATE_KEY_PATH does not point to a file: "
                f"{str(self.vault.private_key_path)!r}",
            )
        if self.vault.public_key_url:
            _validate_http_url(self.vault.public_key_url, "TASK_ENGINE_RSA_PUBLIC_KEY_URL")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _validate_http_url(value: str, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
