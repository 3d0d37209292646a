"""Wire format of a sealed credential."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

ENVELOPE_VERSION = 1
ENVELOPE_ALGORITHM = "RSA-OAEP+AES-GCM"


class EnvelopeFormatError(ValueError):
    """Stored payload claims to be an envelope but is malformed."""


@dataclass(frozen=True, slots=True)
class Envelope:
    """Hybrid envelope: RSA-wrapped AES key, GCM nonce, ciphertext with tag appended.

    Serialized field names (``algo``, ``key``, ``iv``, ``cipher``) match the
    envelopes produced by the browser-side WebCrypto client.
    """

    wrapped_key: bytes
    iv: bytes
    ciphertext: bytes
    version: int = ENVELOPE_VERSION
    algorithm: str = ENVELOPE_ALGORITHM

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "algo": self.algorithm,
            "key": _b64encode(self.wrapped_key),
            "iv": _b64encode(self.iv),
            "cipher": _b64encode(self.ciphertext),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Envelope:
        algorithm = data.get("algo")
        version = data.get("version")
        if not isinstance(algorithm, str):
            raise EnvelopeFormatError("Envelope field 'algo' must be a string.")
        if not isinstance(version, int) or isinstance(version, bool):
            raise EnvelopeFormatError("Envelope field 'version' must be an integer.")
        return cls(
            wrapped_key=_b64field(data, "key"),
            iv=_b64field(data, "iv"),
            ciphertext=_b64field(data, "cipher"),
            version=version,
            algorithm=algorithm,
        )


def looks_like_envelope(parsed: object) -> bool:
    """True when a decoded payload carries an algorithm tag."""

    return isinstance(parsed, dict) and "algo" in parsed


def _b64field(data: dict[str, Any], name: str) -> bytes:
    value = data.get(name)
    if not isinstance(value, str) or not value:
        raise EnvelopeFormatError(f"Envelope field {name!r} must be a non-empty base64 string.")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as error:
        raise EnvelopeFormatError(f"Envelope field {name!r} is not valid base64.") from error


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")
