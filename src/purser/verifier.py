"""
Transaction-level payment verification.

The raw transaction bytes are decoded directly rather than trusting whatever
the client claims it contains. Every SPL ``TransferChecked`` instruction is
extracted and compared with the expected payment (recipient, amount, mint)
before the transaction is dry-run against the ledger.
"""

from __future__ import annotations

import base64
import binascii
import logging
import struct
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from solders.hash import Hash
from solders.pubkey import Pubkey

from .constants import TOKEN_PROGRAM_IDS, TRANSFER_CHECKED_DISCRIMINATOR
from .errors import MalformedTransactionError, RpcError
from .rpc import LedgerRpc

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 64
PUBKEY_LENGTH = 32
VERSION_PREFIX_MASK = 0x80


@dataclass(frozen=True)
class CompiledInstruction:
    program_id_index: int
    accounts: tuple[int, ...]
    data: bytes


@dataclass(frozen=True)
class DecodedTransaction:
    """Wire-level view of a legacy or v0 transaction."""

    version: Optional[int]
    signatures: tuple[bytes, ...]
    num_required_signatures: int
    num_readonly_signed: int
    num_readonly_unsigned: int
    account_keys: tuple[str, ...]
    recent_blockhash: str
    instructions: tuple[CompiledInstruction, ...]
    message_bytes: bytes
    lookup_table_count: int = 0

    @property
    def fee_payer(self) -> Optional[str]:
        return self.account_keys[0] if self.account_keys else None

    @property
    def signers(self) -> tuple[str, ...]:
        return self.account_keys[: self.num_required_signatures]


@dataclass(frozen=True)
class VerifiedTransfer:
    source: str
    mint: str
    destination: str
    amount: int
    decimals: int
    program_id: str
    authority: str = ""

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "mint": self.mint,
            "destination": self.destination,
            "amount": str(self.amount),
            "decimals": self.decimals,
            "program_id": self.program_id,
            "authority": self.authority,
        }


@dataclass(frozen=True)
class ExpectedPayment:
    recipient: str
    amount: int
    mint: str


@dataclass
class VerificationResult:
    success: bool
    recipient_verified: bool = False
    amount_verified: bool = False
    token_mint_verified: bool = False
    error: Optional[str] = None
    transfer: Optional[VerifiedTransfer] = None
    simulation_error: Any = None
    logs: list[str] = field(default_factory=list)
    units_consumed: Optional[int] = None

    def to_dict(self) -> dict:
        d = {
            "success": self.success,
            "recipient_verified": self.recipient_verified,
            "amount_verified": self.amount_verified,
            "token_mint_verified": self.token_mint_verified,
            "error": self.error,
        }
        if self.simulation_error is not None:
            d["simulation_error"] = self.simulation_error
        if self.logs:
            d["logs"] = self.logs
        return d


@dataclass(frozen=True)
class BlockhashValidation:
    is_valid: bool
    max_age_seconds: int
    reason: Optional[str] = None


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def take(self, n: int) -> bytes:
        end = self.offset + n
        if n < 0 or end > len(self.data):
            raise MalformedTransactionError(
                f"Transaction truncated at byte {self.offset} (needed {n} more bytes)"
            )
        chunk = self.data[self.offset : end]
        self.offset = end
        return chunk

    def byte(self) -> int:
        return self.take(1)[0]

    def compact_u16(self) -> int:
        value = 0
        for shift in (0, 7, 14):
            b = self.byte()
            value |= (b & 0x7F) << shift
            if not b & 0x80:
                return value
        raise MalformedTransactionError("Invalid compact-u16 length encoding")

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset


def _as_bytes(raw: bytes | str) -> bytes:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedTransactionError("Transaction is not valid base64") from e


def decode_transaction(raw: bytes | str) -> DecodedTransaction:
    """Decode raw (or base64) transaction bytes without any SDK help."""
    data = _as_bytes(raw)
    if not data:
        raise MalformedTransactionError("Transaction is empty")
    reader = _Reader(data)

    num_signatures = reader.compact_u16()
    signatures = tuple(reader.take(SIGNATURE_LENGTH) for _ in range(num_signatures))
    message_start = reader.offset

    version: Optional[int] = None
    first = reader.byte()
    if first & VERSION_PREFIX_MASK:
        version = first & 0x7F
        if version != 0:
            raise MalformedTransactionError(f"Unsupported transaction version {version}")
        num_required = reader.byte()
    else:
        num_required = first
    num_readonly_signed = reader.byte()
    num_readonly_unsigned = reader.byte()

    num_keys = reader.compact_u16()
    account_keys = tuple(
        str(Pubkey.from_bytes(reader.take(PUBKEY_LENGTH))) for _ in range(num_keys)
    )
    recent_blockhash = str(Hash.from_bytes(reader.take(32)))

    instructions = []
    for _ in range(reader.compact_u16()):
        program_id_index = reader.byte()
        accounts = tuple(reader.take(reader.compact_u16()))
        ix_data = reader.take(reader.compact_u16())
        instructions.append(CompiledInstruction(program_id_index, accounts, ix_data))

    lookup_tables = 0
    if version is not None:
        lookup_tables = reader.compact_u16()
        for _ in range(lookup_tables):
            reader.take(PUBKEY_LENGTH)
            reader.take(reader.compact_u16())
            reader.take(reader.compact_u16())

    if reader.remaining:
        raise MalformedTransactionError(f"{reader.remaining} trailing bytes after message")

    return DecodedTransaction(
        version=version,
        signatures=signatures,
        num_required_signatures=num_required,
        num_readonly_signed=num_readonly_signed,
        num_readonly_unsigned=num_readonly_unsigned,
        account_keys=account_keys,
        recent_blockhash=recent_blockhash,
        instructions=tuple(instructions),
        message_bytes=data[message_start:],
        lookup_table_count=lookup_tables,
    )


def parse_transfer_instructions(
    raw: bytes | str | DecodedTransaction,
    account_keys: Optional[Sequence[str]] = None,
) -> list[VerifiedTransfer]:
    """Extract every Token / Token-2022 ``TransferChecked`` instruction."""
    tx = raw if isinstance(raw, DecodedTransaction) else decode_transaction(raw)
    keys = list(account_keys) if account_keys is not None else list(tx.account_keys)

    def resolve(index: int) -> str:
        # indices past the static table point into unresolved lookup tables
        return keys[index] if index < len(keys) else ""

    transfers = []
    for ix in tx.instructions:
        program_id = resolve(ix.program_id_index)
        if program_id not in TOKEN_PROGRAM_IDS:
            continue
        if len(ix.data) < 10 or ix.data[0] != TRANSFER_CHECKED_DISCRIMINATOR:
            continue
        if len(ix.accounts) < 4:
            continue

        (amount,) = struct.unpack_from("<Q", ix.data, 1)
        transfers.append(
            VerifiedTransfer(
                source=resolve(ix.accounts[0]),
                mint=resolve(ix.accounts[1]),
                destination=resolve(ix.accounts[2]),
                authority=resolve(ix.accounts[3]),
                amount=amount,
                decimals=ix.data[9],
                program_id=program_id,
            )
        )
    return transfers


def simulate_and_verify(
    rpc: LedgerRpc,
    raw: bytes | str,
    account_keys: Optional[Sequence[str]],
    expected: ExpectedPayment,
    simulate: bool = True,
) -> VerificationResult:
    """
    Check the transfer against ``expected`` and dry-run it.

    Mismatches are reported before any RPC call. The amount check accepts
    overpayment (``amount >= expected``). With ``simulate=False`` only the
    instruction checks run.
    """
    try:
        transfers = parse_transfer_instructions(raw, account_keys)
    except MalformedTransactionError as e:
        return VerificationResult(success=False, error=f"Malformed transaction: {e.message}")

    if not transfers:
        return VerificationResult(success=False, error="No transfer instruction found in transaction")

    transfer = next((t for t in transfers if t.destination == expected.recipient), transfers[0])
    recipient_ok = transfer.destination == expected.recipient
    amount_ok = transfer.amount >= expected.amount
    mint_ok = transfer.mint == expected.mint

    problems = []
    if not recipient_ok:
        problems.append(
            f"recipient mismatch: expected {expected.recipient}, got {transfer.destination}"
        )
    if not amount_ok:
        problems.append(f"amount {transfer.amount} does not meet required {expected.amount}")
    if not mint_ok:
        problems.append(f"mint mismatch: expected {expected.mint}, got {transfer.mint}")

    result = VerificationResult(
        success=False,
        recipient_verified=recipient_ok,
        amount_verified=amount_ok,
        token_mint_verified=mint_ok,
        transfer=transfer,
    )
    if problems:
        result.error = "; ".join(problems)
        return result

    if not simulate:
        result.success = True
        return result

    encoded = raw if isinstance(raw, str) else base64.b64encode(bytes(raw)).decode("ascii")
    try:
        outcome = rpc.simulate_transaction(encoded)
    except RpcError as e:
        result.error = f"Simulation RPC error: {e.message}"
        return result

    result.logs = list(outcome.logs)
    result.units_consumed = outcome.units_consumed
    if not outcome.ok:
        result.error = f"Simulation failed: {outcome.err}"
        result.simulation_error = outcome.err
        return result

    result.success = True
    return result


def validate_blockhash_freshness(
    rpc: LedgerRpc,
    blockhash: str,
    max_age_seconds: int = 60,
) -> BlockhashValidation:
    """Reject an expired blockhash. Fails open when the RPC is unavailable."""
    try:
        valid = rpc.is_blockhash_valid(blockhash)
    except RpcError as e:
        logger.warning("Blockhash validation RPC failed, allowing: %s", e.message)
        return BlockhashValidation(
            is_valid=True,
            max_age_seconds=max_age_seconds,
            reason="Blockhash validation RPC call failed (fail-open: allowing)",
        )

    if not valid:
        return BlockhashValidation(
            is_valid=False,
            max_age_seconds=max_age_seconds,
            reason="Transaction blockhash expired. Rebuild the transaction with a fresh blockhash.",
        )
    return BlockhashValidation(is_valid=True, max_age_seconds=max_age_seconds)
