"""
x402 wire types shared by the facilitator service and the agent client.

Requirements travel as camelCase JSON; amounts are base-unit integer strings.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Optional

X402_VERSION = 2
SCHEME_EXACT = "exact"
DEFAULT_MAX_TIMEOUT_SECONDS = 300

PAYMENT_REQUIRED_HEADERS = ("Payment-Required", "X-Payment-Required")
PAYMENT_SIGNATURE_HEADERS = ("Payment-Signature", "X-Payment-Signature")
PAYMENT_RESPONSE_HEADERS = ("Payment-Response", "X-Payment-Response")


class RequirementsFormatError(ValueError):
    """A requirements object or payment payload is missing required fields."""


@dataclass
class PaymentRequirements:
    scheme: str
    network: str
    asset: str
    amount: int
    pay_to: str
    max_timeout_seconds: Optional[int] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "PaymentRequirements":
        if not isinstance(data, dict):
            raise RequirementsFormatError("paymentRequirements must be an object")

        missing = [k for k in ("scheme", "network", "asset", "payTo") if not data.get(k)]
        raw_amount = data.get("amount", data.get("maxAmountRequired"))
        if raw_amount is None or raw_amount == "":
            missing.append("amount")
        if missing:
            raise RequirementsFormatError(
                "paymentRequirements missing field(s): " + ", ".join(missing)
            )

        try:
            amount = int(str(raw_amount))
        except ValueError:
            raise RequirementsFormatError(f"Invalid amount: {raw_amount!r}") from None
        if amount < 0:
            raise RequirementsFormatError(f"Invalid amount: {raw_amount!r}")

        timeout = data.get("maxTimeoutSeconds")
        if timeout is not None and (not isinstance(timeout, int) or timeout <= 0):
            raise RequirementsFormatError("maxTimeoutSeconds must be a positive integer")

        extra = data.get("extra") or {}
        if not isinstance(extra, dict):
            raise RequirementsFormatError("extra must be an object")

        return cls(
            scheme=str(data["scheme"]),
            network=str(data["network"]),
            asset=str(data["asset"]),
            amount=amount,
            pay_to=str(data["payTo"]),
            max_timeout_seconds=timeout,
            extra=dict(extra),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "scheme": self.scheme,
            "network": self.network,
            "asset": self.asset,
            "amount": str(self.amount),
            "payTo": self.pay_to,
        }
        if self.max_timeout_seconds is not None:
            d["maxTimeoutSeconds"] = self.max_timeout_seconds
        if self.extra:
            d["extra"] = self.extra
        return d

    @property
    def fee_payer(self) -> Optional[str]:
        return self.extra.get("feePayer")


def transaction_from_payload(payload: Any) -> str:
    """Pull the base64 transaction out of an x402 payment payload."""
    if not isinstance(payload, dict):
        raise RequirementsFormatError("paymentPayload must be an object")
    inner = payload.get("payload")
    if not isinstance(inner, dict):
        raise RequirementsFormatError("paymentPayload.payload must be an object")
    tx = inner.get("transaction")
    if not isinstance(tx, str) or not tx:
        raise RequirementsFormatError("paymentPayload.payload.transaction is required")
    return tx


def build_payment_payload(requirements: PaymentRequirements, transaction_b64: str) -> dict:
    return {
        "x402Version": X402_VERSION,
        "scheme": requirements.scheme,
        "network": requirements.network,
        "accepted": requirements.to_dict(),
        "payload": {"transaction": transaction_b64},
    }


def encode_header(value: dict) -> str:
    return base64.b64encode(json.dumps(value, separators=(",", ":")).encode()).decode("ascii")


def decode_header(value: str) -> Any:
    try:
        return json.loads(base64.b64decode(value, validate=True))
    except (binascii.Error, ValueError) as e:
        raise RequirementsFormatError("Header is not base64-encoded JSON") from e
