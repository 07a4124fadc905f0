"""
Purser error types.

Every failure carries a stable ``code`` so callers can branch on the cause
(prompt for re-delegation, abort, alert) instead of parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    INVALID_ADDRESS = "INVALID_ADDRESS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_DECIMALS = "INVALID_DECIMALS"
    WEAK_PASSPHRASE = "WEAK_PASSPHRASE"
    INVALID_KEYPAIR_FORMAT = "INVALID_KEYPAIR_FORMAT"
    MISSING_REFERENCE = "MISSING_REFERENCE"
    NO_ACTIVE_DELEGATION = "NO_ACTIVE_DELEGATION"
    INSUFFICIENT_DELEGATION = "INSUFFICIENT_DELEGATION"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    KEYPAIR_EXISTS = "KEYPAIR_EXISTS"
    KEYPAIR_NOT_FOUND = "KEYPAIR_NOT_FOUND"
    TOKEN_ACCOUNT_NOT_FOUND = "TOKEN_ACCOUNT_NOT_FOUND"
    INVALID_PERMISSIONS = "INVALID_PERMISSIONS"
    UNSUPPORTED_VERSION = "UNSUPPORTED_VERSION"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    INVALID_TOKEN_ACCOUNT = "INVALID_TOKEN_ACCOUNT"
    AUDIT_INTEGRITY = "AUDIT_INTEGRITY"
    RPC_ERROR = "RPC_ERROR"
    SIMULATION_FAILED = "SIMULATION_FAILED"
    MALFORMED_TRANSACTION = "MALFORMED_TRANSACTION"
    FACILITATOR_ERROR = "FACILITATOR_ERROR"
    SETTLEMENT_UNKNOWN = "SETTLEMENT_UNKNOWN"
    CONFIG_ERROR = "CONFIG_ERROR"
    SIGNER_ERROR = "SIGNER_ERROR"


class PurserError(Exception):
    """Base error for all Purser operations."""

    code: ErrorCode = ErrorCode.RPC_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}


# Input validation, always raised before any I/O
class ValidationError(PurserError):
    """Malformed caller input."""
    pass


class InvalidAddressError(ValidationError):
    code = ErrorCode.INVALID_ADDRESS


class InvalidAmountError(ValidationError):
    code = ErrorCode.INVALID_AMOUNT


class InvalidDecimalsError(ValidationError):
    code = ErrorCode.INVALID_DECIMALS


class WeakPassphraseError(ValidationError):
    code = ErrorCode.WEAK_PASSPHRASE


class InvalidKeyFormatError(ValidationError):
    code = ErrorCode.INVALID_KEYPAIR_FORMAT


class MissingReferenceError(ValidationError):
    code = ErrorCode.MISSING_REFERENCE


# State preconditions
class StateError(PurserError):
    """The operation is well-formed but the current state forbids it."""
    pass


class NoActiveDelegationError(StateError):
    code = ErrorCode.NO_ACTIVE_DELEGATION


class InsufficientDelegationError(StateError):
    code = ErrorCode.INSUFFICIENT_DELEGATION

    def __init__(self, requested: int, remaining: int):
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Insufficient delegation: requested {requested}, remaining {remaining}"
        )


class BudgetExceededError(StateError):
    code = ErrorCode.BUDGET_EXCEEDED

    def __init__(self, message: str, amount: int = 0, available: int = 0):
        self.amount = amount
        self.available = available
        super().__init__(message)


class KeyAlreadyExistsError(StateError):
    code = ErrorCode.KEYPAIR_EXISTS


class KeyNotFoundError(StateError):
    code = ErrorCode.KEYPAIR_NOT_FOUND


class TokenAccountNotFoundError(StateError):
    code = ErrorCode.TOKEN_ACCOUNT_NOT_FOUND


# Integrity violations: fatal, never retried
class IntegrityError(PurserError):
    """Local or on-chain data failed an integrity check."""
    pass


class InsecurePermissionsError(IntegrityError):
    code = ErrorCode.INVALID_PERMISSIONS


class UnsupportedVersionError(IntegrityError):
    code = ErrorCode.UNSUPPORTED_VERSION


class DecryptionFailedError(IntegrityError):
    code = ErrorCode.DECRYPTION_FAILED


class InvalidTokenAccountError(IntegrityError):
    code = ErrorCode.INVALID_TOKEN_ACCOUNT


class AuditIntegrityError(IntegrityError):
    code = ErrorCode.AUDIT_INTEGRITY


# Transport
class RpcError(PurserError):
    """RPC/network failure. ``cause`` holds the underlying exception or error object."""

    code = ErrorCode.RPC_ERROR

    def __init__(self, message: str, cause: Any = None):
        self.cause = cause
        super().__init__(message)


# Verification
class SimulationFailedError(PurserError):
    code = ErrorCode.SIMULATION_FAILED

    def __init__(self, message: str, detail: Any = None, logs: Optional[list[str]] = None):
        self.detail = detail
        self.logs = logs or []
        super().__init__(message)


class MalformedTransactionError(PurserError):
    code = ErrorCode.MALFORMED_TRANSACTION


# Service boundaries
class FacilitatorError(PurserError):
    """Facilitator rejected or could not settle a payment."""

    code = ErrorCode.FACILITATOR_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class SettlementUnknownError(FacilitatorError):
    """A settle request may have reached the facilitator but no answer came back."""

    code = ErrorCode.SETTLEMENT_UNKNOWN


class ConfigError(PurserError):
    code = ErrorCode.CONFIG_ERROR

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid configuration: " + "; ".join(problems))


class SignerError(PurserError):
    """A signing backend failed to produce a signature."""

    code = ErrorCode.SIGNER_ERROR
