"""Token amount conversion between integer base units and Decimal display values."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR

from .constants import LAMPORTS_PER_SOL, USDC_DECIMALS
from .validation import validate_decimals


def _quantum(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def amount_to_base_units(
    value: Decimal | float | int | str,
    decimals: int = USDC_DECIMALS,
) -> int:
    """Convert a spend amount to base units, rounding up (conservative)."""
    validate_decimals(decimals)
    dec = Decimal(str(value)).quantize(_quantum(decimals), rounding=ROUND_CEILING)
    return int(dec.scaleb(decimals))


def limit_to_base_units(
    value: Decimal | float | int | str,
    decimals: int = USDC_DECIMALS,
) -> int:
    """Convert a budget cap to base units, rounding down (conservative)."""
    validate_decimals(decimals)
    dec = Decimal(str(value)).quantize(_quantum(decimals), rounding=ROUND_FLOOR)
    return int(dec.scaleb(decimals))


def base_units_to_decimal(value: int, decimals: int = USDC_DECIMALS) -> Decimal:
    validate_decimals(decimals)
    return Decimal(value).scaleb(-decimals).quantize(_quantum(decimals))


def format_token_amount(value: int, decimals: int = USDC_DECIMALS, symbol: str = "USDC") -> str:
    return f"{base_units_to_decimal(value, decimals)} {symbol}"


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(lamports) / Decimal(LAMPORTS_PER_SOL)
