"""Envelope encryption for integration credentials.

Secrets are sealed with a fresh AES-256-GCM data key per envelope, and the
data key is wrapped with the vault's RSA public key (OAEP, SHA-256). Anything
that only stores credentials needs the public key; decryption happens solely
inside the worker process that holds the private key.
"""

from task_engine.vault.codec import (
    CredentialDecryptError,
    CredentialVault,
    LegacyCredentialRejected,
    OpenedCredential,
    VaultError,
    decrypt,
    encrypt,
    seal_json,
)
from task_engine.vault.envelope import ENVELOPE_ALGORITHM, ENVELOPE_VERSION, Envelope

__all__ = [
    "ENVELOPE_ALGORITHM",
    "ENVELOPE_VERSION",
    "CredentialDecryptError",
    "CredentialVault",
    "Envelope",
    "LegacyCredentialRejected",
    "OpenedCredential",
    "VaultError",
    "decrypt",
    "encrypt",
    "seal_json",
]
