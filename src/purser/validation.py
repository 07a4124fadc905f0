"""Input validators shared by the delegation, budget and verification layers."""

from __future__ import annotations

from solders.pubkey import Pubkey

from .errors import InvalidAddressError, InvalidAmountError, InvalidDecimalsError

MAX_DECIMALS = 18
MAX_U64 = 2**64 - 1


def validate_address(value: str, label: str) -> Pubkey:
    """Parse a base58 address, raising ``InvalidAddressError`` on anything else."""
    if not isinstance(value, str) or not value:
        raise InvalidAddressError(f"Invalid {label} address: {value!r}")
    try:
        return Pubkey.from_string(value)
    except Exception:
        raise InvalidAddressError(f"Invalid {label} address: {value}") from None


def validate_amount(amount: int, label: str) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"{label} must be an integer number of base units, got {amount!r}")
    if amount <= 0:
        raise InvalidAmountError(f"{label} must be positive, got {amount}")
    if amount > MAX_U64:
        raise InvalidAmountError(f"{label} exceeds u64 range: {amount}")
    return amount


def validate_decimals(decimals: int) -> int:
    if isinstance(decimals, bool) or not isinstance(decimals, int) or not 0 <= decimals <= MAX_DECIMALS:
        raise InvalidDecimalsError(f"Decimals must be an integer 0-{MAX_DECIMALS}, got {decimals!r}")
    return decimals


def is_valid_address(value: str) -> bool:
    try:
        validate_address(value, "candidate")
    except InvalidAddressError:
        return False
    return True
