"""Hybrid RSA-OAEP + AES-256-GCM codec and the process-local credential vault."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from task_engine.vault.envelope import (
    ENVELOPE_ALGORITHM,
    ENVELOPE_VERSION,
    Envelope,
    EnvelopeFormatError,
    looks_like_envelope,
)

logger = logging.getLogger(__name__)

AES_KEY_BYTES = 32
IV_BYTES = 12
DEFAULT_RSA_KEY_BITS = 2048

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


class VaultError(RuntimeError):
    """Base class for vault failures."""


class CredentialDecryptError(VaultError):
    """Envelope could not be opened: tampered, wrong key, or malformed."""


class LegacyCredentialRejected(CredentialDecryptError):
    """Payload is in the legacy base64 format and legacy reads are disabled."""


@dataclass(slots=True)
class OpenedCredential:
    """Decrypted credential fields and how they were stored."""

    data: dict[str, Any]
    legacy: bool = False

    def __repr__(self) -> str:
        return f"OpenedCredential(fields={sorted(self.data)}, legacy={self.legacy})"


def encrypt(plaintext: bytes, public_key: rsa.RSAPublicKey) -> Envelope:
    """Seal ``plaintext`` under a fresh data key wrapped for ``public_key``."""

    data_key = AESGCM.generate_key(bit_length=AES_KEY_BYTES * 8)
    iv = os.urandom(IV_BYTES)
    ciphertext = AESGCM(data_key).encrypt(iv, plaintext, None)
    wrapped_key = public_key.encrypt(data_key, _OAEP)
    return Envelope(wrapped_key=wrapped_key, iv=iv, ciphertext=ciphertext)


def decrypt(envelope: Envelope, private_key: rsa.RSAPrivateKey) -> bytes:
    """Unwrap the data key and authenticate-decrypt the payload."""

    if envelope.algorithm != ENVELOPE_ALGORITHM:
        raise CredentialDecryptError(f"Unsupported envelope algorithm: {envelope.algorithm!r}")
    if envelope.version != ENVELOPE_VERSION:
        raise CredentialDecryptError(f"Unsupported envelope version: {envelope.version!r}")
    if len(envelope.iv) != IV_BYTES:
        raise CredentialDecryptError(f"Envelope IV must be {IV_BYTES} bytes.")

    try:
        data_key = private_key.decrypt(envelope.wrapped_key, _OAEP)
    except ValueError as error:
        raise CredentialDecryptError("Failed to unwrap envelope data key.") from error
    if len(data_key) != AES_KEY_BYTES:
        raise CredentialDecryptError("Unwrapped data key has unexpected length.")

    try:
        return AESGCM(data_key).decrypt(envelope.iv, envelope.ciphertext, None)
    except InvalidTag as error:
        raise CredentialDecryptError("Envelope authentication failed.") from error


def seal_json(data: dict[str, Any], public_key: rsa.RSAPublicKey) -> str:
    """Serialize a credential dict and return the stored envelope JSON."""

    plaintext = json.dumps(data, ensure_ascii=False, sort_keys=True).encode("utf-8")
    return encrypt(plaintext, public_key).to_json()


def decode_legacy_payload(raw: str) -> dict[str, Any]:
    """Decode a legacy base64-encoded plaintext JSON credential."""

    try:
        plaintext = base64.b64decode(raw.strip(), validate=True)
    except (binascii.Error, ValueError) as error:
        raise CredentialDecryptError("Legacy credential payload is not valid base64.") from error
    return _decode_json_object(plaintext)


def is_legacy_payload(raw: str) -> bool:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return True
    return not looks_like_envelope(parsed)


def generate_private_key(bits: int = DEFAULT_RSA_KEY_BITS) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=bits)


def load_private_key_pem(pem: str | bytes, passphrase: str | None = None) -> rsa.RSAPrivateKey:
    data = pem.encode("utf-8") if isinstance(pem, str) else pem
    password = passphrase.encode("utf-8") if passphrase else None
    try:
        key = serialization.load_pem_private_key(data, password=password)
    except (ValueError, TypeError) as error:
        raise VaultError("Cannot load RSA private key from PEM.") from error
    if not isinstance(key, rsa.RSAPrivateKey):
        raise VaultError("Vault private key must be an RSA key.")
    return key


def load_public_key_pem(pem: str | bytes) -> rsa.RSAPublicKey:
    data = pem.encode("utf-8") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_public_key(data)
    except ValueError as error:
        raise VaultError("Cannot load RSA public key from PEM.") from error
    if not isinstance(key, rsa.RSAPublicKey):
        raise VaultError("Vault public key must be an RSA key.")
    return key


def private_key_to_pem(key: rsa.RSAPrivateKey, passphrase: str | None = None) -> str:
    encryption: serialization.KeySerializationEncryption = (
        serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
        if passphrase
        else serialization.NoEncryption()
    )
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    ).decode("ascii")


def public_key_to_pem(key: rsa.RSAPublicKey) -> str:
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


class CredentialVault:
    """Holds the RSA private key for the lifetime of one worker process.

    Constructed once at startup and passed to the components that need it;
    the key is never serialized, logged or shown in ``repr``.
    """

    def __init__(self, private_key: rsa.RSAPrivateKey) -> None:
        self._private_key = private_key

    @classmethod
    def from_pem(cls, pem: str | bytes, passphrase: str | None = None) -> CredentialVault:
        return cls(load_private_key_pem(pem, passphrase))

    def __repr__(self) -> str:
        return f"CredentialVault(key_size={self._private_key.key_size})"

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self._private_key.public_key()

    def public_key_pem(self) -> str:
        return public_key_to_pem(self.public_key)

    def seal_json(self, data: dict[str, Any]) -> str:
        return seal_json(data, self.public_key)

    def decrypt(self, envelope: Envelope) -> bytes:
        return decrypt(envelope, self._private_key)

    def open_payload(self, raw: str, *, allow_legacy: bool = False) -> OpenedCredential:
        """Decrypt a stored credential payload into its JSON fields.

        Envelopes are recognized by their ``algo`` tag. Anything else is the
        legacy base64 format, which is refused unless ``allow_legacy`` is set.
        """

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if looks_like_envelope(parsed):
            try:
                envelope = Envelope.from_dict(parsed)
            except EnvelopeFormatError as error:
                raise CredentialDecryptError(str(error)) from error
            return OpenedCredential(data=_decode_json_object(self.decrypt(envelope)))

        if not allow_legacy:
            raise LegacyCredentialRejected(
                "Credential is stored in the legacy base64 format; "
                "re-encrypt it with `task-engine vault migrate-legacy`.",
            )
        data = decode_legacy_payload(raw)
        logger.warning("Accepted legacy base64 credential payload; it should be migrated.")
        return OpenedCredential(data=data, legacy=True)


def _decode_json_object(plaintext: bytes) -> dict[str, Any]:
    try:
        parsed = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise CredentialDecryptError("Credential plaintext is not valid JSON.") from error
    if not isinstance(parsed, dict):
        raise CredentialDecryptError("Credential plaintext must be a JSON object.")
    return parsed
