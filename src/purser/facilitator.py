"""
x402 facilitator: verifies and settles delegated SPL token payments.

Flow for settle:
1. Re-run every verify check (governance, decode, instruction allowlist,
   transfer match, simulate)
2. Enforce the per-minute rate limit, circuit breaker and replay guard
3. Check the fee reserve and blockhash freshness (both fail open)
4. Co-sign as fee payer and submit
5. Record the replay entry and one audit entry
"""

from __future__ import annotations

import base64
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from solders.pubkey import Pubkey
from solders.signature import Signature
from spl.token.instructions import get_associated_token_address

from .audit import AuditAction, AuditLogEntry, AuditLogger, AuditStatus
from .config import FacilitatorSettings
from .constants import COMPUTE_BUDGET_PROGRAM_ID, TOKEN_PROGRAM_IDS, TRANSFER_CHECKED_DISCRIMINATOR
from .delegation import DelegationManager
from .errors import MalformedTransactionError, PurserError, RpcError
from .fee_reserve import FeeReserveMonitor
from .governance import (
    DEFAULT_REPLAY_TTL_SECONDS,
    REPLAY_TTL_MARGIN_SECONDS,
    CircuitBreaker,
    Clock,
    RateCounter,
    ReplayGuard,
    SanctionsScreener,
    check_amount_cap,
    check_rate_limit,
    check_recipient_allowlist,
    check_token_allowlist,
)
from .rpc import LedgerRpc
from .signers import Signer
from .validation import is_valid_address
from .verifier import (
    SIGNATURE_LENGTH,
    DecodedTransaction,
    ExpectedPayment,
    VerifiedTransfer,
    decode_transaction,
    simulate_and_verify,
    validate_blockhash_freshness,
)
from .x402 import (
    SCHEME_EXACT,
    X402_VERSION,
    PaymentRequirements,
    RequirementsFormatError,
    transaction_from_payload,
)

logger = logging.getLogger(__name__)

_EMPTY_SIGNATURE = bytes(SIGNATURE_LENGTH)
_COMPUTE_BUDGET_PROGRAM = str(COMPUTE_BUDGET_PROGRAM_ID)
_LEGACY_NETWORK_NAMES = {
    "mainnet-beta": "solana",
    "devnet": "solana-devnet",
    "testnet": "solana-testnet",
}


@dataclass
class VerifyResponse:
    is_valid: bool
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "isValid": self.is_valid,
            "invalidReason": self.invalid_reason,
            "payer": self.payer,
        }


@dataclass
class SettleResponse:
    success: bool
    network: str
    transaction: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "transaction": self.transaction,
            "network": self.network,
            "payer": self.payer,
            "errorReason": self.error_reason,
        }


class _Rejection(Exception):
    def __init__(self, reason: str, status: AuditStatus = AuditStatus.REJECTED):
        self.reason = reason
        self.status = status
        super().__init__(reason)


@dataclass
class _Attempt:
    """Context accumulated while a verify/settle request is processed."""

    requirements: Optional[PaymentRequirements] = None
    raw: bytes = b""
    decoded: Optional[DecodedTransaction] = None
    transfer: Optional[VerifiedTransfer] = None
    payer: Optional[str] = None
    governance: dict[str, Any] = field(default_factory=dict)


class Facilitator:
    """Governed x402 facilitator for the ``exact`` scheme on Solana."""

    def __init__(
        self,
        rpc: LedgerRpc,
        fee_payer: Signer,
        settings: FacilitatorSettings,
        audit: AuditLogger,
        fee_monitor: Optional[FeeReserveMonitor] = None,
        sanctions: Optional[SanctionsScreener] = None,
        clock: Clock = time.monotonic,
    ):
        gov = settings.governance
        self.rpc = rpc
        self.fee_payer = fee_payer
        self.settings = settings
        self.audit = audit
        self.fee_monitor = fee_monitor or FeeReserveMonitor(
            rpc,
            fee_payer.address,
            alert_threshold_sol=gov.gas_alert_threshold_sol,
        )
        if sanctions is None and gov.sanctions_screening_enabled:
            path = Path(gov.sanctions_blocklist_path).expanduser() if gov.sanctions_blocklist_path else None
            sanctions = SanctionsScreener.from_file(path, gov.sanctions_fail_closed)
        self.sanctions = sanctions
        self.circuit_breaker = CircuitBreaker(gov.circuit_breaker, clock) if gov.circuit_breaker_enabled else None
        self.replay_guard = ReplayGuard(clock)
        self.rate_counter = RateCounter(clock)
        self.delegations = DelegationManager(rpc)
        self._inflight: set[str] = set()
        self._inflight_lock = threading.Lock()

    @property
    def network(self) -> str:
        return self.settings.caip2

    def get_supported(self) -> dict:
        return {
            "kinds": [
                {
                    "x402Version": X402_VERSION,
                    "scheme": SCHEME_EXACT,
                    "network": self.network,
                    "extra": {"feePayer": self.fee_payer.address},
                }
            ]
        }

    # ----- verify -----

    def verify(self, payment_payload: Any, requirements: Any) -> VerifyResponse:
        started = time.perf_counter()
        attempt = _Attempt()
        try:
            self._run_checks(attempt, payment_payload, requirements, simulate=True)
        except _Rejection as r:
            self._audit(AuditAction.VERIFY, r.status, attempt, started, error_reason=r.reason)
            logger.info("Verify rejected: %s", r.reason)
            return VerifyResponse(is_valid=False, invalid_reason=r.reason, payer=attempt.payer)

        self._audit(AuditAction.VERIFY, AuditStatus.SUCCESS, attempt, started)
        return VerifyResponse(is_valid=True, payer=attempt.payer)

    def _run_checks(
        self,
        attempt: _Attempt,
        payment_payload: Any,
        raw_requirements: Any,
        simulate: bool,
    ) -> None:
        try:
            attempt.requirements = req = PaymentRequirements.from_dict(raw_requirements)
            tx_b64 = transaction_from_payload(payment_payload)
        except RequirementsFormatError as e:
            raise _Rejection(str(e)) from e

        if req.scheme != SCHEME_EXACT:
            raise _Rejection(f"Unsupported scheme: {req.scheme}")
        if req.network not in (self.network, _LEGACY_NETWORK_NAMES.get(self.settings.network)):
            raise _Rejection(f"Network mismatch: expected {self.network}, got {req.network}")
        if not is_valid_address(req.pay_to):
            raise _Rejection(f"Invalid payTo address: {req.pay_to}")
        if not is_valid_address(req.asset):
            raise _Rejection(f"Invalid asset address: {req.asset}")
        token_program = req.extra.get("tokenProgram")
        if token_program and str(token_program) not in TOKEN_PROGRAM_IDS:
            raise _Rejection(f"Unsupported token program: {token_program}")
        explicit = req.extra.get("recipientTokenAccount")
        if explicit and not is_valid_address(str(explicit)):
            raise _Rejection(f"Invalid recipientTokenAccount address: {explicit}")

        gov = self.settings.governance
        for name, check in (
            ("tokenAllowlist", check_token_allowlist(req.asset, gov.allowed_tokens)),
            ("recipientAllowlist", check_recipient_allowlist(req.pay_to, gov.allowed_recipients)),
            ("amountCap", check_amount_cap(req.amount, gov.max_settlement_amount)),
        ):
            attempt.governance[name] = check.allowed
            if not check.allowed:
                raise _Rejection(check.reason or name)

        try:
            decoded = decode_transaction(tx_b64)
        except MalformedTransactionError as e:
            raise _Rejection(f"Malformed transaction: {e.message}") from e
        attempt.decoded = decoded
        attempt.raw = _raw_bytes(tx_b64)

        self._check_signatures(decoded)
        self._check_instructions(decoded)

        expected = ExpectedPayment(
            recipient=self._expected_recipient(req),
            amount=req.amount,
            mint=req.asset,
        )
        result = simulate_and_verify(self.rpc, attempt.raw, decoded.account_keys, expected, simulate=simulate)
        attempt.transfer = result.transfer
        if result.transfer is not None:
            attempt.payer = result.transfer.authority or decoded.fee_payer
        attempt.governance["transfer"] = {
            "recipient": result.recipient_verified,
            "amount": result.amount_verified,
            "mint": result.token_mint_verified,
        }
        if simulate:
            attempt.governance["simulation"] = result.success
        if not result.success:
            raise _Rejection(result.error or "Transaction verification failed")

        transfer = result.transfer
        if gov.delegation_check_enabled:
            self._check_delegation(attempt, transfer)

        if self.sanctions is not None:
            screened = self.sanctions.screen(
                [transfer.authority, transfer.source, req.pay_to, transfer.destination]
            )
            attempt.governance["sanctions"] = screened.allowed
            if not screened.allowed:
                raise _Rejection(screened.reason or "Sanctions screening failed")

    def _check_signatures(self, decoded: DecodedTransaction) -> None:
        message = decoded.message_bytes
        for index, key in enumerate(decoded.signers):
            sig = decoded.signatures[index] if index < len(decoded.signatures) else _EMPTY_SIGNATURE
            if key == self.fee_payer.address:
                continue
            if sig == _EMPTY_SIGNATURE or not Signature.from_bytes(sig).verify(
                Pubkey.from_string(key), message
            ):
                raise _Rejection(f"Missing or invalid signature for signer {key}")

    def _check_instructions(self, decoded: DecodedTransaction) -> None:
        """
        Only compute-budget instructions and exactly one ``TransferChecked``
        may ride along, and none of them may touch the fee payer's account.
        """
        keys = decoded.account_keys
        fee_payer = self.fee_payer.address
        transfers = 0
        for position, ix in enumerate(decoded.instructions):
            program_id = keys[ix.program_id_index] if ix.program_id_index < len(keys) else ""
            if program_id in TOKEN_PROGRAM_IDS and ix.data[:1] == bytes([TRANSFER_CHECKED_DISCRIMINATOR]):
                transfers += 1
                if len(ix.accounts) > 3 and ix.accounts[3] < len(keys) and keys[ix.accounts[3]] == fee_payer:
                    raise _Rejection("Facilitator fee payer cannot be the transfer authority")
            elif program_id != _COMPUTE_BUDGET_PROGRAM:
                raise _Rejection(f"Instruction {position} calls disallowed program {program_id or 'unknown'}")
            for index in ix.accounts:
                if index >= len(keys):
                    raise _Rejection(f"Instruction {position} references an account outside the static key table")
                if keys[index] == fee_payer:
                    raise _Rejection(f"Instruction {position} references the facilitator fee payer")

        if transfers == 0:
            raise _Rejection("No transfer instruction found in transaction")
        if transfers > 1:
            raise _Rejection(f"Expected exactly one transfer instruction, found {transfers}")

    def _expected_recipient(self, req: PaymentRequirements) -> str:
        explicit = req.extra.get("recipientTokenAccount")
        if explicit:
            return str(explicit)
        token_program = req.extra.get("tokenProgram")
        if token_program:
            return str(
                get_associated_token_address(
                    Pubkey.from_string(req.pay_to),
                    Pubkey.from_string(req.asset),
                    Pubkey.from_string(token_program),
                )
            )
        return str(
            get_associated_token_address(Pubkey.from_string(req.pay_to), Pubkey.from_string(req.asset))
        )

    def _check_delegation(self, attempt: _Attempt, transfer: VerifiedTransfer) -> None:
        try:
            status = self.delegations.inspect(transfer.source)
        except PurserError as e:
            attempt.governance["delegation"] = False
            raise _Rejection(f"Delegation check failed: {e.message}") from e

        problem = None
        if not status.is_active:
            problem = f"No active delegation on {transfer.source}"
        elif status.delegate != transfer.authority:
            problem = f"Transfer authority {transfer.authority} is not the delegate of {transfer.source}"
        elif status.frozen:
            problem = f"Token account {transfer.source} is frozen"
        elif status.remaining_amount < transfer.amount:
            problem = (
                f"Insufficient delegation: requested {transfer.amount}, "
                f"remaining {status.remaining_amount}"
            )
        attempt.governance["delegation"] = problem is None
        if problem:
            raise _Rejection(problem)

    # ----- settle -----

    def settle(self, payment_payload: Any, requirements: Any) -> SettleResponse:
        started = time.perf_counter()
        attempt = _Attempt()
        replay_key: Optional[str] = None
        try:
            gov = self.settings.governance
            self._run_checks(attempt, payment_payload, requirements, simulate=gov.simulate_before_submit)

            rate = check_rate_limit(self.rate_counter.count(), gov.rate_limit_per_minute)
            attempt.governance["rateLimit"] = rate.allowed
            if not rate.allowed:
                raise _Rejection(rate.reason or "Rate limit exceeded")

            req = attempt.requirements
            if self.circuit_breaker is not None:
                tripped = self.circuit_breaker.check(attempt.payer or "", req.pay_to, req.amount)
                attempt.governance["circuitBreaker"] = tripped.allowed
                if not tripped.allowed:
                    raise _Rejection(tripped.reason or "Circuit breaker tripped")

            replay_key = _replay_key(attempt.decoded)
            self._claim(replay_key, attempt)

            signature = self._submit(attempt)

            ttl = (req.max_timeout_seconds or DEFAULT_REPLAY_TTL_SECONDS) + REPLAY_TTL_MARGIN_SECONDS
            self.replay_guard.record(replay_key, ttl)
            self.rate_counter.increment()
            if self.circuit_breaker is not None:
                self.circuit_breaker.record(attempt.payer or "", req.pay_to, req.amount)
        except _Rejection as r:
            self._audit(AuditAction.SETTLE, r.status, attempt, started, error_reason=r.reason)
            logger.info("Settle %s: %s", r.status.value, r.reason)
            return SettleResponse(
                success=False,
                network=self.network,
                payer=attempt.payer,
                error_reason=r.reason,
            )
        finally:
            if replay_key is not None:
                self._release(replay_key)

        self._audit(AuditAction.SETTLE, AuditStatus.SUCCESS, attempt, started, tx_signature=signature)
        logger.info("Settled %d of %s to %s: %s", req.amount, req.asset, req.pay_to, signature)
        return SettleResponse(
            success=True,
            network=self.network,
            transaction=signature,
            payer=attempt.payer,
        )

    def _claim(self, replay_key: str, attempt: _Attempt) -> None:
        with self._inflight_lock:
            duplicate = replay_key in self._inflight or self.replay_guard.check(replay_key)
            attempt.governance["replay"] = not duplicate
            if duplicate:
                raise _Rejection("Duplicate transaction: already settled or in flight")
            self._inflight.add(replay_key)

    def _release(self, replay_key: str) -> None:
        with self._inflight_lock:
            self._inflight.discard(replay_key)

    def _submit(self, attempt: _Attempt) -> str:
        gov = self.settings.governance
        decoded = attempt.decoded

        can_afford = self.fee_monitor.can_afford_settlement()
        attempt.governance["feeReserve"] = can_afford
        if not can_afford:
            raise _Rejection("Insufficient fee reserve to pay transaction fees", AuditStatus.FAILED)

        if gov.blockhash_validation_enabled:
            freshness = validate_blockhash_freshness(
                self.rpc, decoded.recent_blockhash, gov.blockhash_max_age_seconds
            )
            attempt.governance["blockhash"] = freshness.is_valid
            if not freshness.is_valid:
                raise _Rejection(freshness.reason or "Blockhash expired")

        raw = attempt.raw
        if self.fee_payer.address in decoded.signers:
            raw = self._cosign(raw, decoded)

        try:
            return self.rpc.send_transaction(base64.b64encode(raw).decode("ascii"))
        except RpcError as e:
            raise _Rejection(f"Transaction submission failed: {e.message}", AuditStatus.FAILED) from e

    def _cosign(self, raw: bytes, decoded: DecodedTransaction) -> bytes:
        index = decoded.signers.index(self.fee_payer.address)
        try:
            signature = self.fee_payer.sign(decoded.message_bytes)
        except PurserError as e:
            raise _Rejection(f"Fee payer signing failed: {e.message}", AuditStatus.FAILED) from e

        sig_start = len(raw) - len(decoded.message_bytes) - SIGNATURE_LENGTH * len(decoded.signatures)
        offset = sig_start + SIGNATURE_LENGTH * index
        return raw[:offset] + signature + raw[offset + SIGNATURE_LENGTH :]

    # ----- audit -----

    def _audit(
        self,
        action: AuditAction,
        status: AuditStatus,
        attempt: _Attempt,
        started: float,
        tx_signature: Optional[str] = None,
        error_reason: Optional[str] = None,
    ) -> None:
        req = attempt.requirements
        entry = AuditLogEntry(
            action=action.value,
            status=status.value,
            payer_address=attempt.payer or "",
            recipient_address=req.pay_to if req else "",
            amount=str(req.amount) if req else "0",
            token_mint=req.asset if req else "",
            network=self.network,
            governance_result=dict(attempt.governance),
            latency_ms=round((time.perf_counter() - started) * 1000, 3),
            tx_signature=tx_signature,
            error_reason=error_reason,
        )
        try:
            self.audit.log(entry)
        except OSError:
            logger.exception("Failed to write audit entry for %s", action.value)


def _raw_bytes(tx_b64: str) -> bytes:
    return base64.b64decode(tx_b64)


def _replay_key(decoded: DecodedTransaction) -> str:
    for sig in decoded.signatures:
        if sig != _EMPTY_SIGNATURE:
            return str(Signature.from_bytes(sig))
    raise _Rejection("Transaction carries no signatures")
