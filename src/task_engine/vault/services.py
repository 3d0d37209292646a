"""Credential provisioning and legacy-format migration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from cryptography.hazmat.primitives.asymmetric import rsa

from task_engine.vault.codec import (
    CredentialDecryptError,
    decode_legacy_payload,
    is_legacy_payload,
    seal_json,
)
from task_engine.vault.repository import CredentialRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LegacyMigrationReport:
    migrated: int = 0
    already_sealed: int = 0
    failed: list[str] = field(default_factory=list)


class CredentialService:
    """Seals credentials with the vault public key; never needs the private key."""

    def __init__(
        self,
        *,
        repository: CredentialRepository,
        public_key: rsa.RSAPublicKey,
    ) -> None:
        self.repository = repository
        self.public_key = public_key

    def store_credential(self, *, target_id: str, owner_id: str, secret: dict[str, Any]) -> None:
        if not target_id.strip() or not owner_id.strip():
            raise ValueError("target_id and owner_id are required.")
        if not secret:
            raise ValueError("Credential secret must not be empty.")
        self.repository.upsert_credential(
            target_id=target_id,
            owner_id=owner_id,
            payload=seal_json(secret, self.public_key),
        )

    def migrate_legacy(self) -> LegacyMigrationReport:
        """Re-encrypt every legacy base64 payload as an envelope, once."""

        report = LegacyMigrationReport()
        for credential in self.repository.list_credentials():
            if not is_legacy_payload(credential.payload):
                report.already_sealed += 1
                continue
            label = f"{credential.target_id}/{credential.owner_id}"
            try:
                secret = decode_legacy_payload(credential.payload)
            except CredentialDecryptError as error:
                logger.warning("Cannot migrate legacy credential %s: %s", label, error)
                report.failed.append(label)
                continue
            replaced = self.repository.replace_payload(
                credential_id=credential.credential_id,
                expected_payload=credential.payload,
                new_payload=seal_json(secret, self.public_key),
            )
            if replaced:
                logger.info("Migrated legacy credential %s to envelope format", label)
                report.migrated += 1
            else:
                report.failed.append(label)
        return report
