"""
Purser: delegated SPL token spending for AI agents.

Bounded, revocable spending authority:
Owner approves a delegate cap → Agent spends within it → Facilitator verifies every transfer.
"""

__version__ = "0.1.0"

from .errors import ErrorCode, PurserError
from .signers import KeypairSigner, Signer, sign_message
from .key_managers import EncryptedFileKeyManager, KeyManagerConfig, TurnkeyKeyManager, create_key_manager
from .rpc import LedgerRpc, SolanaRpc
from .delegation import DelegationManager, DelegationStatus, decode_token_account
from .budget import BudgetCheck, BudgetLedger, SpendRecord
from .verifier import (
    ExpectedPayment,
    VerificationResult,
    decode_transaction,
    parse_transfer_instructions,
    simulate_and_verify,
    validate_blockhash_freshness,
)
from .fee_reserve import FeeReserveMonitor, FeeReserveStatus
from .audit import AuditLogEntry, InMemoryAuditLogger, JsonlAuditTrail, StreamAuditLogger
from .facilitator import Facilitator, SettleResponse, VerifyResponse

__all__ = [
    "ErrorCode", "PurserError",
    "Signer", "KeypairSigner", "sign_message",
    "EncryptedFileKeyManager", "TurnkeyKeyManager", "KeyManagerConfig", "create_key_manager",
    "LedgerRpc", "SolanaRpc",
    "DelegationManager", "DelegationStatus", "decode_token_account",
    "BudgetLedger", "BudgetCheck", "SpendRecord",
    "ExpectedPayment", "VerificationResult", "decode_transaction", "parse_transfer_instructions",
    "simulate_and_verify", "validate_blockhash_freshness",
    "FeeReserveMonitor", "FeeReserveStatus",
    "AuditLogEntry", "InMemoryAuditLogger", "JsonlAuditTrail", "StreamAuditLogger",
    "Facilitator", "VerifyResponse", "SettleResponse",
]
