"""
Local budget ledger for delegated spending.

Combines two views of the spending authority:

1. On-chain: the remaining delegated allowance, read fresh on every check
2. Local: the cumulative spend recorded by this process

``available`` is always ``min(on_chain_remaining, initial_budget - spent)``
so neither a stale local view nor a drifted on-chain view can be exceeded.
Checks and mutations are serialised by one re-entrant lock per ledger, held
across the blocking on-chain read.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

from .errors import BudgetExceededError, MissingReferenceError
from .validation import validate_amount

logger = logging.getLogger(__name__)


class DelegationReader(Protocol):
    def inspect(self, owner_account: str): ...


@dataclass(frozen=True)
class SpendRecord:
    """A single recorded spend."""

    amount: int
    settlement_reference: str
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "settlement_reference": self.settlement_reference,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class BudgetCheck:
    remaining_on_chain: int
    spent: int
    available: int

    def to_dict(self) -> dict:
        return {
            "remaining_on_chain": self.remaining_on_chain,
            "spent": self.spent,
            "available": self.available,
        }


class BudgetLedger:
    """Tracks cumulative spend against a delegation cap."""

    def __init__(self, initial_budget: int, delegation: DelegationReader):
        self._initial_budget = validate_amount(initial_budget, "Initial budget")
        self._delegation = delegation
        self._spent = 0
        self._history: list[SpendRecord] = []
        self._lock = threading.RLock()

    @classmethod
    def create(cls, initial_budget: int, delegation: DelegationReader) -> "BudgetLedger":
        return cls(initial_budget, delegation)

    def check_budget(self, owner_account: str) -> BudgetCheck:
        with self._lock:
            status = self._delegation.inspect(owner_account)
            remaining_on_chain = status.remaining_amount
            local_remaining = self._initial_budget - self._spent
            available = max(0, min(remaining_on_chain, local_remaining))
            return BudgetCheck(
                remaining_on_chain=remaining_on_chain,
                spent=self._spent,
                available=available,
            )

    def record_spend(self, amount: int, settlement_reference: str) -> SpendRecord:
        validate_amount(amount, "Spend amount")
        if not isinstance(settlement_reference, str) or not settlement_reference.strip():
            raise MissingReferenceError("Settlement reference is required for spend recording")

        with self._lock:
            new_spent = self._spent + amount
            if new_spent > self._initial_budget:
                raise BudgetExceededError(
                    f"Recording spend of {amount} would exceed budget: "
                    f"spent {self._spent} + {amount} > budget {self._initial_budget}",
                    amount=amount,
                    available=self._initial_budget - self._spent,
                )
            record = SpendRecord(
                amount=amount,
                settlement_reference=settlement_reference,
                timestamp=datetime.now(timezone.utc).isoformat(),
            )
            self._spent = new_spent
            self._history.append(record)

        logger.info("Recorded spend of %d (ref %s), total %d", amount, settlement_reference, new_spent)
        return record

    def authorize_and_record(
        self,
        owner_account: str,
        amount: int,
        settle: Callable[[], str],
    ) -> SpendRecord:
        """
        Check, settle and record as one atomic step.

        ``settle`` runs with the ledger lock held and must return the
        settlement reference (transaction signature). Once it returns, the
        spend is recorded regardless of any later confirmation outcome.
        """
        validate_amount(amount, "Spend amount")
        with self._lock:
            check = self.check_budget(owner_account)
            if amount > check.available:
                raise BudgetExceededError(
                    f"Payment requires {amount} but only {check.available} available "
                    f"(on-chain: {check.remaining_on_chain}, spent: {check.spent})",
                    amount=amount,
                    available=check.available,
                )
            reference = settle()
            return self.record_spend(amount, reference)

    def reset(self) -> None:
        with self._lock:
            self._spent = 0
            self._history = []

    def get_spend_history(self) -> tuple[SpendRecord, ...]:
        with self._lock:
            return tuple(self._history)

    def get_total_spent(self) -> int:
        return self._spent

    def get_initial_budget(self) -> int:
        return self._initial_budget
