"""
SPL token delegation lifecycle: grant, inspect, spend, revoke.

A delegation moves through ``none -> active -> (spent) -> revoked | exhausted``.
Only the token account owner can (re)activate it; the agent can only spend
down what the owner approved. On-chain state is read fresh on every call and
never cached.
"""

from __future__ import annotations

import base64
import logging
import struct
from dataclasses import dataclass
from typing import Optional

from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from spl.token.instructions import (
    ApproveCheckedParams,
    RevokeParams,
    TransferCheckedParams,
    approve_checked,
    revoke,
    transfer_checked,
)

from .constants import TOKEN_PROGRAM_ID, TOKEN_PROGRAM_IDS
from .errors import (
    InsufficientDelegationError,
    InvalidTokenAccountError,
    NoActiveDelegationError,
    RpcError,
    SimulationFailedError,
    TokenAccountNotFoundError,
)
from .rpc import LedgerRpc
from .signers import Signer, sign_message
from .validation import validate_address, validate_amount, validate_decimals

logger = logging.getLogger(__name__)

TOKEN_ACCOUNT_LENGTH = 165

_STATE_NAMES = {0: "uninitialized", 1: "initialized", 2: "frozen"}


@dataclass(frozen=True)
class TokenAccount:
    """Decoded SPL token account (base layout, shared by Token-2022)."""

    mint: str
    owner: str
    amount: int
    delegate: Optional[str]
    state: str
    is_native: Optional[int]
    delegated_amount: int
    close_authority: Optional[str]


def _read_coption_pubkey(data: bytes, offset: int, field_name: str) -> Optional[str]:
    (tag,) = struct.unpack_from("<I", data, offset)
    if tag == 0:
        return None
    if tag == 1:
        return str(Pubkey.from_bytes(data[offset + 4 : offset + 36]))
    raise InvalidTokenAccountError(f"Invalid COption tag {tag} for {field_name}")


def decode_token_account(data: bytes) -> TokenAccount:
    if len(data) < TOKEN_ACCOUNT_LENGTH:
        raise InvalidTokenAccountError(
            f"Token account data too short: {len(data)} bytes (expected {TOKEN_ACCOUNT_LENGTH})"
        )

    mint = str(Pubkey.from_bytes(data[0:32]))
    owner = str(Pubkey.from_bytes(data[32:64]))
    (amount,) = struct.unpack_from("<Q", data, 64)
    delegate = _read_coption_pubkey(data, 72, "delegate")
    state = _STATE_NAMES.get(data[108])
    if state is None:
        raise InvalidTokenAccountError(f"Invalid token account state {data[108]}")

    (native_tag,) = struct.unpack_from("<I", data, 109)
    if native_tag not in (0, 1):
        raise InvalidTokenAccountError(f"Invalid COption tag {native_tag} for is_native")
    is_native = struct.unpack_from("<Q", data, 113)[0] if native_tag == 1 else None

    (delegated_amount,) = struct.unpack_from("<Q", data, 121)
    close_authority = _read_coption_pubkey(data, 129, "close_authority")

    return TokenAccount(
        mint=mint,
        owner=owner,
        amount=amount,
        delegate=delegate,
        state=state,
        is_native=is_native,
        delegated_amount=delegated_amount,
        close_authority=close_authority,
    )


@dataclass(frozen=True)
class DelegationStatus:
    is_active: bool
    delegate: Optional[str]
    remaining_amount: int
    # The chain only keeps the remaining allowance, so this mirrors it.
    original_amount: int
    asset_id: str
    owner_account: str
    program_id: str = str(TOKEN_PROGRAM_ID)
    frozen: bool = False

    def to_dict(self) -> dict:
        return {
            "is_active": self.is_active,
            "delegate": self.delegate,
            "remaining_amount": self.remaining_amount,
            "original_amount": self.original_amount,
            "asset_id": self.asset_id,
            "owner_account": self.owner_account,
            "program_id": self.program_id,
            "frozen": self.frozen,
        }


@dataclass(frozen=True)
class UnsignedAuthorization:
    """A compiled owner-side transaction waiting for the owner's signature."""

    message: Message
    blockhash: str
    last_valid_block_height: int
    fee_payer: str

    def to_wire(self) -> bytes:
        return bytes(Transaction.new_unsigned(self.message))

    def sign(self, signer: Signer) -> bytes:
        return bytes(sign_message(self.message, [signer]))


class DelegationManager:
    """Builds delegation transactions and reads delegation state over ``rpc``."""

    def __init__(self, rpc: LedgerRpc):
        self.rpc = rpc

    def _compile(self, instruction, fee_payer: Pubkey) -> tuple[Message, str, int]:
        latest = self.rpc.get_latest_blockhash()
        message = Message.new_with_blockhash(
            [instruction],
            fee_payer,
            Hash.from_string(latest.blockhash),
        )
        return message, latest.blockhash, latest.last_valid_block_height

    def grant(
        self,
        owner_account: str,
        owner_signer: Signer,
        delegate_address: str,
        asset_id: str,
        cap: int,
        decimals: int,
        token_program_id: Pubkey = TOKEN_PROGRAM_ID,
    ) -> UnsignedAuthorization:
        """Build an ``ApproveChecked`` grant of ``cap`` base units to the delegate."""
        source = validate_address(owner_account, "owner token account")
        delegate = validate_address(delegate_address, "delegate")
        mint = validate_address(asset_id, "token mint")
        owner = validate_address(owner_signer.address, "owner")
        validate_amount(cap, "cap")
        validate_decimals(decimals)

        instruction = approve_checked(
            ApproveCheckedParams(
                program_id=token_program_id,
                source=source,
                mint=mint,
                delegate=delegate,
                owner=owner,
                amount=cap,
                decimals=decimals,
            )
        )
        message, blockhash, last_valid = self._compile(instruction, owner)
        logger.info(
            "Built delegation grant: account=%s delegate=%s cap=%d",
            owner_account,
            delegate_address,
            cap,
        )
        return UnsignedAuthorization(
            message=message,
            blockhash=blockhash,
            last_valid_block_height=last_valid,
            fee_payer=str(owner),
        )

    def inspect(self, owner_account: str) -> DelegationStatus:
        validate_address(owner_account, "owner token account")

        try:
            info = self.rpc.get_account_info(owner_account)
        except RpcError as e:
            raise RpcError(f"Failed to fetch token account {owner_account}: {e.message}", cause=e) from e

        if info is None:
            raise TokenAccountNotFoundError(f"Token account not found: {owner_account}")
        if info.owner not in TOKEN_PROGRAM_IDS:
            raise InvalidTokenAccountError(
                f"Account {owner_account} is owned by {info.owner}, not an SPL token program"
            )

        account = decode_token_account(info.data)
        has_delegate = account.delegate is not None
        return DelegationStatus(
            is_active=has_delegate and account.delegated_amount > 0,
            delegate=account.delegate,
            remaining_amount=account.delegated_amount,
            original_amount=account.delegated_amount,
            asset_id=account.mint,
            owner_account=owner_account,
            program_id=info.owner,
            frozen=account.state == "frozen",
        )

    def build_transfer(
        self,
        delegate_signer: Signer,
        source: str,
        destination: str,
        asset_id: str,
        amount: int,
        decimals: int,
        fee_payer: Optional[Signer | str] = None,
        token_program_id: Pubkey = TOKEN_PROGRAM_ID,
    ) -> Transaction:
        """
        Build and sign a ``TransferChecked`` with the delegate as authority.

        ``fee_payer`` may be another signer, or just an address when a
        facilitator will co-sign as fee payer; in that case the returned
        transaction is partially signed.
        """
        source_key = validate_address(source, "source token account")
        dest_key = validate_address(destination, "destination token account")
        mint = validate_address(asset_id, "token mint")
        delegate = validate_address(delegate_signer.address, "delegate")
        validate_amount(amount, "amount")
        validate_decimals(decimals)

        signers: list[Signer] = [delegate_signer]
        if fee_payer is None:
            payer_key = delegate
        elif isinstance(fee_payer, str):
            payer_key = validate_address(fee_payer, "fee payer")
        else:
            payer_key = validate_address(fee_payer.address, "fee payer")
            if fee_payer.address != delegate_signer.address:
                signers.append(fee_payer)

        instruction = transfer_checked(
            TransferCheckedParams(
                program_id=token_program_id,
                source=source_key,
                mint=mint,
                dest=dest_key,
                owner=delegate,
                amount=amount,
                decimals=decimals,
            )
        )
        message, _, _ = self._compile(instruction, payer_key)
        return sign_message(message, signers, allow_partial=isinstance(fee_payer, str))

    def spend(
        self,
        delegate_signer: Signer,
        source: str,
        destination: str,
        asset_id: str,
        amount: int,
        decimals: int,
        fee_payer: Optional[Signer] = None,
    ) -> str:
        """Transfer ``amount`` from ``source`` as delegate. Returns the signature."""
        validate_address(source, "source token account")
        validate_address(destination, "destination token account")
        validate_address(asset_id, "token mint")
        validate_amount(amount, "amount")
        validate_decimals(decimals)

        status = self.inspect(source)
        if not status.is_active:
            raise NoActiveDelegationError(f"No active delegation on token account {source}")
        if status.delegate != delegate_signer.address:
            raise NoActiveDelegationError(
                f"Token account {source} is delegated to {status.delegate}, "
                f"not {delegate_signer.address}"
            )
        if amount > status.remaining_amount:
            raise InsufficientDelegationError(requested=amount, remaining=status.remaining_amount)

        tx = self.build_transfer(
            delegate_signer,
            source,
            destination,
            asset_id,
            amount,
            decimals,
            fee_payer=fee_payer,
            token_program_id=Pubkey.from_string(status.program_id),
        )
        encoded = base64.b64encode(bytes(tx)).decode("ascii")

        try:
            outcome = self.rpc.simulate_transaction(encoded)
        except RpcError as e:
            raise SimulationFailedError(
                f"Simulation request failed: {e.message}", detail=e.cause
            ) from e
        if not outcome.ok:
            raise SimulationFailedError(
                f"Transaction simulation failed: {outcome.err}",
                detail=outcome.err,
                logs=outcome.logs,
            )

        try:
            self.rpc.send_transaction(encoded)
        except RpcError as e:
            raise RpcError(f"Failed to send transaction: {e.message}", cause=e) from e

        signature = str(tx.signatures[0])
        logger.info("Delegated transfer of %d from %s submitted: %s", amount, source, signature)
        return signature

    def revoke(
        self,
        owner_signer: Signer,
        owner_account: str,
        token_program_id: Pubkey = TOKEN_PROGRAM_ID,
    ) -> UnsignedAuthorization:
        account = validate_address(owner_account, "owner token account")
        owner = validate_address(owner_signer.address, "owner")

        instruction = revoke(
            RevokeParams(program_id=token_program_id, account=account, owner=owner)
        )
        message, blockhash, last_valid = self._compile(instruction, owner)
        logger.info("Built delegation revoke for %s", owner_account)
        return UnsignedAuthorization(
            message=message,
            blockhash=blockhash,
            last_valid_block_height=last_valid,
            fee_payer=str(owner),
        )
