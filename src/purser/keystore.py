"""
Encrypted key store for agent signing keys.

Keys live on disk only as an AES-256-GCM envelope whose key is derived from a
passphrase with scrypt. The derived key is recomputed on every decrypt and
the plaintext secret only ever exists inside a ``secret_buffer`` that is
overwritten with zeros when the caller is done with it.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from solders.keypair import Keypair

from .errors import (
    DecryptionFailedError,
    InvalidKeyFormatError,
    KeyAlreadyExistsError,
    KeyNotFoundError,
    UnsupportedVersionError,
    WeakPassphraseError,
)
from .signers import SECRET_KEY_LENGTH, KeypairSigner
from .storage import require_owner_only, write_private_file

logger = logging.getLogger(__name__)

KEYSTORE_VERSION = 1
MIN_PASSPHRASE_LENGTH = 12
SALT_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16

# One message for every decrypt failure so callers cannot tell a wrong
# passphrase from a corrupted record.
DECRYPTION_FAILED_MESSAGE = "Decryption failed: wrong passphrase or corrupted key file"


@dataclass(frozen=True)
class KdfParams:
    n: int
    r: int
    p: int
    key_len: int = 32


KDF_PARAMS_PRODUCTION = KdfParams(n=2**20, r=8, p=1, key_len=32)
KDF_PARAMS_FAST = KdfParams(n=2**14, r=8, p=1, key_len=32)


def kdf_params_for_mode(mode: str) -> KdfParams:
    """Resolve a ``PURSER_KDF_MODE`` value (``fast`` | ``production``)."""
    if mode == "production":
        return KDF_PARAMS_PRODUCTION
    if mode == "fast":
        return KDF_PARAMS_FAST
    raise ValueError(f"Unknown KDF mode: {mode!r} (expected 'fast' or 'production')")


def default_kdf_params() -> KdfParams:
    return kdf_params_for_mode(os.getenv("PURSER_KDF_MODE", "production"))


@dataclass(frozen=True)
class EncryptedKeyRecord:
    version: int
    salt: bytes
    iv: bytes
    ciphertext: bytes
    auth_tag: bytes

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "salt": _b64(self.salt),
            "iv": _b64(self.iv),
            "ciphertext": _b64(self.ciphertext),
            "authTag": _b64(self.auth_tag),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedKeyRecord":
        version = data.get("version")
        if version != KEYSTORE_VERSION:
            raise UnsupportedVersionError(f"Unsupported key file version: {version!r}")
        try:
            return cls(
                version=version,
                salt=base64.b64decode(data["salt"], validate=True),
                iv=base64.b64decode(data["iv"], validate=True),
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
                auth_tag=base64.b64decode(data["authTag"], validate=True),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DecryptionFailedError(DECRYPTION_FAILED_MESSAGE) from e


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _zero(buf: bytearray) -> None:
    buf[:] = bytes(len(buf))


@contextmanager
def secret_buffer(data: bytes | bytearray) -> Iterator[bytearray]:
    """
    Hold secret material in a mutable buffer that is zeroed on exit.

    A ``bytearray`` argument is used in place (and zeroed); anything else is
    copied into a fresh buffer.
    """
    buf = data if isinstance(data, bytearray) else bytearray(data)
    try:
        yield buf
    finally:
        _zero(buf)


def _validate_passphrase(passphrase: str) -> None:
    if not isinstance(passphrase, str) or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise WeakPassphraseError(
            f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters"
        )


def _derive_key(passphrase: str, salt: bytes, params: KdfParams) -> bytearray:
    kdf = Scrypt(salt=salt, length=params.key_len, n=params.n, r=params.r, p=params.p)
    return bytearray(kdf.derive(passphrase.encode("utf-8")))


def generate() -> tuple[str, bytearray]:
    """
    Generate a new Ed25519 identity.

    Returns ``(address, secret)`` where ``secret`` is the 64-byte
    ``seed || pubkey`` buffer. The caller owns the buffer and must zero it.
    """
    with secret_buffer(secrets.token_bytes(32)) as seed:
        keypair = Keypair.from_seed(bytes(seed))
    secret = bytearray(bytes(keypair))
    return str(keypair.pubkey()), secret


def encrypt(
    raw_secret: bytes | bytearray,
    passphrase: str,
    kdf_params: KdfParams = KDF_PARAMS_PRODUCTION,
) -> EncryptedKeyRecord:
    if len(raw_secret) != SECRET_KEY_LENGTH:
        raise InvalidKeyFormatError(
            f"Secret key must be exactly {SECRET_KEY_LENGTH} bytes, got {len(raw_secret)}"
        )
    _validate_passphrase(passphrase)

    salt = secrets.token_bytes(SALT_LENGTH)
    iv = secrets.token_bytes(IV_LENGTH)

    with secret_buffer(_derive_key(passphrase, salt, kdf_params)) as key:
        encryptor = Cipher(algorithms.AES(key), modes.GCM(iv)).encryptor()
        ciphertext = encryptor.update(raw_secret) + encryptor.finalize()
        tag = encryptor.tag

    return EncryptedKeyRecord(
        version=KEYSTORE_VERSION,
        salt=salt,
        iv=iv,
        ciphertext=ciphertext,
        auth_tag=tag,
    )


def decrypt(
    record: EncryptedKeyRecord,
    passphrase: str,
    kdf_params: KdfParams = KDF_PARAMS_PRODUCTION,
) -> bytearray:
    """Decrypt a record into a new ``bytearray`` the caller must zero."""
    if record.version != KEYSTORE_VERSION:
        raise UnsupportedVersionError(f"Unsupported key file version: {record.version!r}")

    with secret_buffer(_derive_key(passphrase, record.salt, kdf_params)) as key:
        # update_into keeps the plaintext in a buffer we own and can wipe
        buf = bytearray(len(record.ciphertext) + TAG_LENGTH - 1)
        try:
            decryptor = Cipher(
                algorithms.AES(key),
                modes.GCM(record.iv, record.auth_tag),
            ).decryptor()
            written = decryptor.update_into(record.ciphertext, buf)
            decryptor.finalize()
        except (InvalidTag, ValueError) as e:
            _zero(buf)
            raise DecryptionFailedError(DECRYPTION_FAILED_MESSAGE) from e

    plaintext = bytearray(buf[:written])
    _zero(buf)
    return plaintext


def store(
    raw_secret: bytes | bytearray,
    passphrase: str,
    path: Path,
    overwrite: bool = False,
    kdf_params: KdfParams = KDF_PARAMS_PRODUCTION,
) -> Path:
    path = Path(path)
    if path.exists() and not overwrite:
        raise KeyAlreadyExistsError(f"Key file already exists: {path}")

    record = encrypt(raw_secret, passphrase, kdf_params)
    write_private_file(path, record.to_json().encode("utf-8"), overwrite=overwrite)
    logger.info("Stored encrypted key at %s", path)
    return path


def read_record(path: Path) -> EncryptedKeyRecord:
    """Read a key record after checking the file exists and is owner-only."""
    path = Path(path)
    if not path.exists():
        raise KeyNotFoundError(f"Key file not found: {path}")
    require_owner_only(path)

    try:
        data = json.loads(path.read_text())
    except ValueError as e:
        raise DecryptionFailedError(DECRYPTION_FAILED_MESSAGE) from e
    if not isinstance(data, dict):
        raise DecryptionFailedError(DECRYPTION_FAILED_MESSAGE)
    return EncryptedKeyRecord.from_dict(data)


def load(
    path: Path,
    passphrase: str,
    kdf_params: KdfParams = KDF_PARAMS_PRODUCTION,
) -> KeypairSigner:
    record = read_record(path)
    with secret_buffer(decrypt(record, passphrase, kdf_params)) as secret:
        return KeypairSigner.from_secret_bytes(secret)


def secure_delete(path: Path) -> bool:
    """
    Overwrite a key file with random bytes, fsync, then unlink it.

    Returns False when there was nothing to delete.
    """
    path = Path(path)
    if not path.exists():
        return False

    size = path.stat().st_size
    with open(path, "r+b") as f:
        f.write(secrets.token_bytes(size))
        f.flush()
        os.fsync(f.fileno())
    path.unlink()
    logger.info("Securely deleted key file %s", path)
    return True
