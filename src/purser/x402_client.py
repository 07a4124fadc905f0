"""
x402 payment client for agents paying from a delegated token account.

Flow:
1. Request the resource; a 402 carries the payment requirements
2. Pick the first requirement that passes network/recipient/amount policy
3. Build a TransferChecked signed by the agent as delegate
4. Atomically check the budget, settle through the facilitator, record the spend
5. Retry the resource with the payment header

Trust policy: once the facilitator reports the payment settled, the payment
is a success even if the resource server's retry returns a non-200. The
settled signature is the proof of payment; the resource status is reported
alongside it.

When the settle outcome is unknown (the request may have been delivered but
no answer came back) the spend is still recorded, against the agent's own
transaction signature, and ``pay`` returns ``success=False`` carrying that
signature so the caller can reconcile it.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from solders.pubkey import Pubkey
from solders.signature import Signature
from spl.token.instructions import get_associated_token_address

from .budget import BudgetLedger
from .constants import SOLANA_CAIP2, TOKEN_PROGRAM_IDS, USDC_DECIMALS
from .delegation import DelegationManager
from .errors import FacilitatorError, PurserError, SettlementUnknownError
from .facilitator_client import FacilitatorClient
from .signers import Signer
from .validation import is_valid_address
from .x402 import (
    PAYMENT_REQUIRED_HEADERS,
    PAYMENT_RESPONSE_HEADERS,
    PAYMENT_SIGNATURE_HEADERS,
    SCHEME_EXACT,
    X402_VERSION,
    PaymentRequirements,
    RequirementsFormatError,
    build_payment_payload,
    decode_header,
    encode_header,
)

logger = logging.getLogger(__name__)


@dataclass
class X402Config:
    network: str = SOLANA_CAIP2["devnet"]
    timeout_seconds: float = 30.0
    max_amount: Optional[int] = None


@dataclass
class X402PaymentResult:
    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    amount: Optional[int] = None
    pay_to: Optional[str] = None
    resource_status: Optional[int] = None
    error: Optional[str] = None
    settle_response: Optional[dict] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "transaction": self.transaction,
            "network": self.network,
            "amount": str(self.amount) if self.amount is not None else None,
            "pay_to": self.pay_to,
            "resource_status": self.resource_status,
            "error": self.error,
        }


@dataclass
class PaymentRequired:
    x402_version: int
    accepts: list[PaymentRequirements]
    response: Optional[httpx.Response] = field(default=None, repr=False)


def _header_lookup(headers: httpx.Headers | dict, names: tuple[str, ...]) -> Optional[str]:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value:
            return value
    return None


def _requirements_list(accepts: Any) -> list[PaymentRequirements]:
    parsed = []
    for raw in accepts if isinstance(accepts, list) else []:
        try:
            parsed.append(PaymentRequirements.from_dict(raw))
        except RequirementsFormatError as e:
            logger.debug("Skipping unparseable payment requirement: %s", e)
    return parsed


def parse_payment_required(response: httpx.Response) -> Optional[PaymentRequired]:
    """
    Extract requirements from a 402 response.

    Tried in order: the JSON body, the base64 ``Payment-Required`` header,
    then the legacy ``X-Payment-*`` headers. Returns None when nothing usable
    is present.
    """
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("accepts"):
        accepts = _requirements_list(body["accepts"])
        if accepts:
            return PaymentRequired(int(body.get("x402Version", 1)), accepts, response)

    encoded = _header_lookup(response.headers, PAYMENT_REQUIRED_HEADERS)
    if encoded:
        try:
            decoded = decode_header(encoded)
        except RequirementsFormatError as e:
            logger.debug("Ignoring malformed payment-required header: %s", e)
            decoded = None
        if isinstance(decoded, dict):
            accepts = _requirements_list(decoded.get("accepts"))
            if accepts:
                return PaymentRequired(int(decoded.get("x402Version", X402_VERSION)), accepts, response)

    headers = response.headers
    amount = headers.get("X-Payment-Amount")
    pay_to = headers.get("X-Payment-Recipient") or headers.get("X-Payment-PayTo")
    asset = headers.get("X-Payment-Token") or headers.get("X-Payment-Asset")
    if amount and pay_to and asset:
        accepts = _requirements_list(
            [
                {
                    "scheme": SCHEME_EXACT,
                    "network": headers.get("X-Payment-Network") or SOLANA_CAIP2["devnet"],
                    "asset": asset,
                    "amount": amount,
                    "payTo": pay_to,
                }
            ]
        )
        if accepts:
            return PaymentRequired(1, accepts, response)
    return None


def validate_requirement(req: PaymentRequirements, network: str) -> Optional[str]:
    """Return why ``req`` is unacceptable on ``network``, or None."""
    if not req.amount or req.amount <= 0:
        return "Payment amount is zero or missing"
    if not req.pay_to:
        return "Payment recipient is missing"
    if not is_valid_address(req.pay_to):
        return "Invalid recipient address"
    if not is_valid_address(req.asset):
        return "Invalid asset address"
    token_program = req.extra.get("tokenProgram")
    if token_program and str(token_program) not in TOKEN_PROGRAM_IDS:
        return f"Unsupported token program {token_program}"
    explicit = req.extra.get("recipientTokenAccount")
    if explicit and not is_valid_address(str(explicit)):
        return "Invalid recipient token account"
    if not req.network.startswith("solana:"):
        return f"Unsupported network {req.network} (expected Solana)"
    if req.network != network:
        return f"Network mismatch: expected {network}, got {req.network}"
    return None


def recipient_token_account(req: PaymentRequirements) -> str:
    explicit = req.extra.get("recipientTokenAccount")
    if explicit:
        return str(explicit)
    owner = Pubkey.from_string(req.pay_to)
    mint = Pubkey.from_string(req.asset)
    token_program = req.extra.get("tokenProgram")
    if token_program:
        return str(get_associated_token_address(owner, mint, Pubkey.from_string(token_program)))
    return str(get_associated_token_address(owner, mint))


class X402PaymentClient:
    """Pays for x402-protected resources out of a delegated token account."""

    def __init__(
        self,
        signer: Signer,
        owner_account: str,
        delegations: DelegationManager,
        budget: BudgetLedger,
        facilitator: Optional[FacilitatorClient] = None,
        config: Optional[X402Config] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.config = config or X402Config()
        self._signer = signer
        self.owner_account = owner_account
        self.delegations = delegations
        self.budget = budget
        self.facilitator = facilitator or FacilitatorClient()
        self._http = http or httpx.Client(timeout=self.config.timeout_seconds)

    @property
    def address(self) -> str:
        return self._signer.address

    def request(self, url: str, method: str = "GET", **kwargs) -> httpx.Response | PaymentRequired:
        response = self._http.request(method, url, **kwargs)
        if response.status_code != 402:
            return response
        required = parse_payment_required(response)
        return required if required is not None else response

    def select_requirement(
        self,
        required: PaymentRequired,
        max_amount: Optional[int] = None,
    ) -> PaymentRequirements | str:
        caps = [c for c in (self.config.max_amount, max_amount) if c is not None]
        cap = min(caps) if caps else None

        first_error: Optional[str] = None
        for req in required.accepts:
            if req.scheme != SCHEME_EXACT:
                first_error = first_error or f"Unsupported scheme {req.scheme}"
                continue
            problem = validate_requirement(req, self.config.network)
            if problem:
                first_error = first_error or problem
                continue
            if cap is not None and req.amount > cap:
                first_error = first_error or f"Payment amount {req.amount} exceeds approved max {cap}"
                continue
            return req
        return first_error or "No acceptable payment requirement"

    def pay(
        self,
        url: str,
        method: str = "GET",
        max_amount: Optional[int] = None,
        **kwargs,
    ) -> X402PaymentResult:
        """Pay for access to an x402-protected resource."""
        try:
            first = self.request(url, method, **kwargs)
        except httpx.HTTPError as e:
            return X402PaymentResult(success=False, error=f"Request failed: {type(e).__name__}: {e}")

        if isinstance(first, httpx.Response):
            if first.status_code == 402:
                return X402PaymentResult(success=False, error="No payment requirements in 402 response")
            if first.is_success:
                return X402PaymentResult(success=True, resource_status=first.status_code)
            return X402PaymentResult(
                success=False,
                resource_status=first.status_code,
                error=f"Unexpected status {first.status_code}: {first.text[:200]}",
            )

        selected = self.select_requirement(first, max_amount)
        if isinstance(selected, str):
            return X402PaymentResult(success=False, error=selected)
        req = selected

        unknown: list[str] = []
        try:
            payload, reference = self._build_payload(req)
            settle_response: dict = {}

            def settle() -> str:
                try:
                    settle_response.update(self.facilitator.settle(payload, req.to_dict()))
                except SettlementUnknownError as e:
                    # the transfer may have landed; keep it counted against the budget
                    logger.warning("Settlement of %s is indeterminate: %s", reference, e.message)
                    unknown.append(e.message)
                    return reference
                transaction = settle_response.get("transaction")
                if not transaction:
                    raise FacilitatorError("Facilitator reported success without a transaction")
                return str(transaction)

            record = self.budget.authorize_and_record(self.owner_account, req.amount, settle)
        except PurserError as e:
            logger.warning("x402 payment to %s failed: %s", req.pay_to, e.message)
            return X402PaymentResult(
                success=False,
                network=req.network,
                amount=req.amount,
                pay_to=req.pay_to,
                error=e.message,
            )

        if unknown:
            return X402PaymentResult(
                success=False,
                transaction=record.settlement_reference,
                network=req.network,
                amount=req.amount,
                pay_to=req.pay_to,
                error=f"Settlement outcome unknown ({unknown[0]}); spend recorded as {record.settlement_reference}",
            )

        result = X402PaymentResult(
            success=True,
            transaction=record.settlement_reference,
            network=req.network,
            amount=req.amount,
            pay_to=req.pay_to,
            settle_response=settle_response,
        )
        self._retry_with_payment(url, method, payload, result, **kwargs)
        return result

    def _build_payload(self, req: PaymentRequirements) -> tuple[dict, str]:
        """Return the payment payload and the agent's own signature on it."""
        decimals = int(req.extra.get("decimals", USDC_DECIMALS))
        tx = self.delegations.build_transfer(
            self._signer,
            source=self.owner_account,
            destination=recipient_token_account(req),
            asset_id=req.asset,
            amount=req.amount,
            decimals=decimals,
            fee_payer=req.fee_payer,
        )
        encoded = base64.b64encode(bytes(tx)).decode("ascii")
        reference = next(str(sig) for sig in tx.signatures if sig != Signature.default())
        return build_payment_payload(req, encoded), reference

    def _retry_with_payment(
        self,
        url: str,
        method: str,
        payload: dict,
        result: X402PaymentResult,
        **kwargs,
    ) -> None:
        header_value = encode_header(payload)
        headers = dict(kwargs.pop("headers", None) or {})
        for name in PAYMENT_SIGNATURE_HEADERS:
            headers[name] = header_value

        try:
            response = self._http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Payment %s settled but resource retry failed: %s", result.transaction, e)
            return

        result.resource_status = response.status_code
        if not response.is_success:
            logger.warning(
                "Payment %s settled but resource returned %d",
                result.transaction,
                response.status_code,
            )
            return

        settled = _header_lookup(response.headers, PAYMENT_RESPONSE_HEADERS)
        if settled:
            try:
                decoded = decode_header(settled)
            except RequirementsFormatError:
                return
            if isinstance(decoded, dict):
                result.settle_response = {**(result.settle_response or {}), **decoded}

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
