"""
Key custody backends.

Provides:
1. ``EncryptedFileKeyManager`` for local scrypt + AES-GCM key files
2. ``TurnkeyKeyManager`` for enclave-held keys signed via Turnkey's API
3. ``create_key_manager`` to pick a backend from configuration
"""

from __future__ import annotations

import base64
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import httpx
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from . import keystore
from .errors import ConfigError, PurserError, SignerError
from .keystore import KdfParams
from .signers import HealthStatus, KeypairSigner, Signer

logger = logging.getLogger(__name__)

TURNKEY_API_URL = "https://api.turnkey.com"
TURNKEY_STAMP_SCHEME = "SIGNATURE_SCHEME_TK_API_P256"
TURNKEY_SIGN_ACTIVITY = "ACTIVITY_TYPE_SIGN_RAW_PAYLOAD_V2"
TURNKEY_COMPLETED = "ACTIVITY_STATUS_COMPLETED"


@dataclass
class KeyManagerConfig:
    provider: str
    options: dict[str, Any] = field(default_factory=dict)


class EncryptedFileKeyManager:
    """Signs with a key decrypted from an encrypted key file on first use."""

    provider = "encrypted-file"

    def __init__(
        self,
        path: Path,
        passphrase: str,
        kdf_params: Optional[KdfParams] = None,
    ):
        self.path = Path(path)
        self._passphrase = passphrase
        self._kdf_params = kdf_params or keystore.default_kdf_params()
        self._signer: Optional[KeypairSigner] = None

    def _get_signer(self) -> KeypairSigner:
        if self._signer is None:
            self._signer = keystore.load(self.path, self._passphrase, self._kdf_params)
        return self._signer

    @property
    def address(self) -> str:
        return self._get_signer().address

    def sign(self, message: bytes) -> bytes:
        return self._get_signer().sign(message)

    def health_check(self) -> HealthStatus:
        try:
            self._get_signer()
        except (PurserError, OSError) as e:
            return HealthStatus(healthy=False, provider=self.provider, detail=type(e).__name__)
        return HealthStatus(healthy=True, provider=self.provider)

    def destroy(self) -> None:
        if self._signer is not None:
            self._signer.destroy()
        self._signer = None


class TurnkeyKeyManager:
    """
    Signs inside Turnkey's enclaves via ``sign_raw_payload``.

    Requests are authenticated with an ``X-Stamp`` header: an ECDSA P-256
    signature over the exact request body, made with the API key pair.
    """

    provider = "turnkey"

    def __init__(
        self,
        organization_id: str,
        api_public_key: str,
        api_private_key: str,
        sign_with: str,
        base_url: str = TURNKEY_API_URL,
        timeout_seconds: float = 30.0,
        http: Optional[httpx.Client] = None,
    ):
        if not organization_id:
            raise ValueError("TurnkeyKeyManager requires organization_id")
        if not api_public_key:
            raise ValueError("TurnkeyKeyManager requires api_public_key")
        if not api_private_key:
            raise ValueError("TurnkeyKeyManager requires api_private_key")
        if not sign_with:
            raise ValueError("TurnkeyKeyManager requires sign_with (Solana address)")

        try:
            self._api_key = ec.derive_private_key(int(api_private_key, 16), ec.SECP256R1())
        except ValueError as e:
            raise ValueError("Turnkey API private key must be a hex-encoded P-256 scalar") from e

        self.organization_id = organization_id
        self._api_public_key = api_public_key
        self._sign_with = sign_with
        self._base_url = base_url.rstrip("/")
        self._http = http or httpx.Client(timeout=timeout_seconds)

    @property
    def address(self) -> str:
        return self._sign_with

    def _stamp(self, body: str) -> str:
        signature = self._api_key.sign(body.encode(), ec.ECDSA(hashes.SHA256()))
        stamp = {
            "publicKey": self._api_public_key,
            "scheme": TURNKEY_STAMP_SCHEME,
            "signature": signature.hex(),
        }
        encoded = base64.urlsafe_b64encode(json.dumps(stamp).encode()).decode()
        return encoded.rstrip("=")

    def _post(self, path: str, payload: dict) -> dict:
        body = json.dumps(payload, separators=(",", ":"))
        response = self._http.post(
            f"{self._base_url}{path}",
            content=body,
            headers={"Content-Type": "application/json", "X-Stamp": self._stamp(body)},
        )
        response.raise_for_status()
        return response.json()

    def sign(self, message: bytes) -> bytes:
        payload = {
            "type": TURNKEY_SIGN_ACTIVITY,
            "timestampMs": str(int(time.time() * 1000)),
            "organizationId": self.organization_id,
            "parameters": {
                "signWith": self._sign_with,
                "payload": bytes(message).hex(),
                "encoding": "PAYLOAD_ENCODING_HEXADECIMAL",
                "hashFunction": "HASH_FUNCTION_NOT_APPLICABLE",
            },
        }
        try:
            data = self._post("/public/v1/submit/sign_raw_payload", payload)
        except httpx.HTTPError as e:
            raise SignerError(f"Turnkey sign_raw_payload failed: {e}") from e
        except ValueError as e:
            raise SignerError("Turnkey returned an invalid JSON response") from e

        activity = data.get("activity") or {}
        status = activity.get("status")
        if status and status != TURNKEY_COMPLETED:
            raise SignerError(f"Turnkey signing activity not completed: {status}")

        result = (activity.get("result") or {}).get("signRawPayloadResult") or {}
        r, s = result.get("r"), result.get("s")
        if not r or not s:
            raise SignerError("Turnkey sign_raw_payload returned empty r or s")

        try:
            return bytes.fromhex(_pad_hex(r, 64) + _pad_hex(s, 64))
        except ValueError as e:
            raise SignerError("Turnkey returned a malformed signature") from e

    def health_check(self) -> HealthStatus:
        try:
            self._post("/public/v1/query/whoami", {"organizationId": self.organization_id})
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Turnkey health check failed: %s", e)
            return HealthStatus(healthy=False, provider=self.provider, detail=str(e))
        return HealthStatus(healthy=True, provider=self.provider)

    def close(self):
        self._http.close()


def _pad_hex(value: str, length: int) -> str:
    clean = value[2:] if value.startswith("0x") else value
    return clean.rjust(length, "0")


def create_key_manager(config: KeyManagerConfig) -> Signer:
    """Build the signer backend named by ``config.provider``."""
    options = config.options
    if config.provider == EncryptedFileKeyManager.provider:
        path = options.get("path")
        passphrase = options.get("passphrase")
        if not path:
            raise ConfigError(["encrypted-file key manager requires options.path"])
        if not passphrase or not isinstance(passphrase, str):
            raise ConfigError(["encrypted-file key manager requires options.passphrase"])
        return EncryptedFileKeyManager(
            Path(path),
            passphrase,
            kdf_params=options.get("kdf_params"),
        )

    if config.provider == TurnkeyKeyManager.provider:
        missing = [
            name
            for name in ("organization_id", "api_public_key", "api_private_key", "sign_with")
            if not options.get(name)
        ]
        if missing:
            raise ConfigError([f"turnkey key manager requires options.{name}" for name in missing])
        return TurnkeyKeyManager(
            organization_id=options["organization_id"],
            api_public_key=options["api_public_key"],
            api_private_key=options["api_private_key"],
            sign_with=options["sign_with"],
            base_url=options.get("base_url", TURNKEY_API_URL),
        )

    raise ConfigError([f"Unsupported key manager provider: {config.provider}"])
