"""Client for the vault public-key provisioning endpoint."""

from __future__ import annotations

import logging

import httpx
from cryptography.hazmat.primitives.asymmetric import rsa

from task_engine.vault.codec import VaultError, load_public_key_pem

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class PublicKeyClient:
    """Fetch and cache the vault's RSA public key.

    The endpoint may answer with JSON (``{"publicKey": "<PEM>"}``) or with the
    PEM document itself.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
            follow_redirects=True,
        )
        self._cached: rsa.RSAPublicKey | None = None

    def fetch(self) -> rsa.RSAPublicKey:
        if self._cached is not None:
            return self._cached
        try:
            response = self._client.get(self.url)
            response.raise_for_status()
        except httpx.HTTPError as error:
            logger.warning("Failed to fetch vault public key from %s: %s", self.url, error)
            raise VaultError(f"Vault public key unavailable: {error}") from error

        self._cached = load_public_key_pem(_extract_pem(response))
        return self._cached

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> PublicKeyClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _extract_pem(response: httpx.Response) -> str:
    if "json" in response.headers.get("content-type", ""):
        try:
            payload = response.json()
        except ValueError as error:
            raise VaultError("Public key response is not valid JSON.") from error
        pem = payload.get("publicKey") if isinstance(payload, dict) else None
        if not isinstance(pem, str) or not pem.strip():
            raise VaultError("Public key response has no 'publicKey' field.")
        return pem
    return response.text
