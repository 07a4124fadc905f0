"""
Signing capability shared by every key custody backend.

A ``Signer`` exposes the agent's public address, Ed25519 signing over raw
message bytes, and a health probe. Callers never see key material.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, runtime_checkable

from solders.keypair import Keypair
from solders.message import Message
from solders.signature import Signature
from solders.transaction import Transaction

from .errors import InvalidKeyFormatError, SignerError

SECRET_KEY_LENGTH = 64


@dataclass(frozen=True)
class HealthStatus:
    healthy: bool
    provider: str
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"healthy": self.healthy, "provider": self.provider}
        if self.detail:
            d["detail"] = self.detail
        return d


@runtime_checkable
class Signer(Protocol):
    @property
    def address(self) -> str: ...

    def sign(self, message: bytes) -> bytes: ...

    def health_check(self) -> HealthStatus: ...


class KeypairSigner:
    """In-memory Ed25519 signer built from a 64-byte ``seed || pubkey`` secret."""

    provider = "keypair"

    def __init__(self, keypair: Keypair):
        self._keypair: Optional[Keypair] = keypair
        self._address = str(keypair.pubkey())

    @classmethod
    def from_secret_bytes(cls, secret: bytes | bytearray) -> "KeypairSigner":
        if len(secret) != SECRET_KEY_LENGTH:
            raise InvalidKeyFormatError(
                f"Keypair must be exactly {SECRET_KEY_LENGTH} bytes, got {len(secret)}"
            )
        keypair = Keypair.from_seed(bytes(secret[:32]))
        if bytes(keypair.pubkey()) != bytes(secret[32:]):
            raise InvalidKeyFormatError("Keypair public half does not match its secret seed")
        return cls(keypair)

    @property
    def address(self) -> str:
        return self._address

    def sign(self, message: bytes) -> bytes:
        if self._keypair is None:
            raise SignerError("Signer has been destroyed")
        return bytes(self._keypair.sign_message(bytes(message)))

    def health_check(self) -> HealthStatus:
        return HealthStatus(healthy=self._keypair is not None, provider=self.provider)

    def destroy(self) -> None:
        self._keypair = None

    def __repr__(self) -> str:
        return f"KeypairSigner(address={self._address!r})"


def sign_message(
    message: Message,
    signers: Sequence[Signer],
    allow_partial: bool = False,
) -> Transaction:
    """
    Sign a compiled message with every required signer, in account-key order.

    With ``allow_partial`` the slots of absent signers are left as the
    all-zero signature so another party (typically a fee-paying
    facilitator) can fill them in later.
    """
    required = message.header.num_required_signatures
    signer_keys = [str(k) for k in message.account_keys[:required]]
    by_address = {s.address: s for s in signers}

    missing = [k for k in signer_keys if k not in by_address]
    if missing and not allow_partial:
        raise SignerError(f"Missing signer(s) for required account(s): {', '.join(missing)}")

    payload = bytes(message)
    signatures = [
        Signature.from_bytes(by_address[k].sign(payload)) if k in by_address else Signature.default()
        for k in signer_keys
    ]
    return Transaction.populate(message, signatures)
