"""Fee payer SOL balance monitoring."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .constants import LAMPORTS_PER_SOL
from .errors import RpcError
from .rpc import LedgerRpc

logger = logging.getLogger(__name__)

ESTIMATED_FEE_PER_OPERATION = 10_000
MINIMUM_SETTLEMENT_FEE = 5_000
DEFAULT_ALERT_THRESHOLD_SOL = 0.1


@dataclass(frozen=True)
class FeeReserveStatus:
    balance_lamports: int
    balance_sol: float
    is_healthy: bool
    estimated_operations_remaining: int
    address: str
    alert_threshold_sol: float

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "balance_lamports": self.balance_lamports,
            "balance_sol": self.balance_sol,
            "alert_threshold_sol": self.alert_threshold_sol,
            "is_healthy": self.is_healthy,
            "estimated_operations_remaining": self.estimated_operations_remaining,
        }


class FeeReserveMonitor:
    """Watches the fee payer balance. ``can_afford_settlement`` fails open."""

    def __init__(
        self,
        rpc: LedgerRpc,
        address: str,
        alert_threshold_sol: float = DEFAULT_ALERT_THRESHOLD_SOL,
    ):
        self.rpc = rpc
        self.address = address
        self.alert_threshold_sol = alert_threshold_sol

    def check_balance(self) -> FeeReserveStatus:
        """Read the balance. RPC failures propagate as ``RpcError``."""
        lamports = self.rpc.get_balance(self.address)
        balance_sol = lamports / LAMPORTS_PER_SOL
        is_healthy = balance_sol >= self.alert_threshold_sol
        if not is_healthy:
            logger.warning(
                "Fee payer balance low: %.6f SOL (threshold: %s SOL) for %s",
                balance_sol,
                self.alert_threshold_sol,
                self.address,
            )
        return FeeReserveStatus(
            balance_lamports=lamports,
            balance_sol=balance_sol,
            is_healthy=is_healthy,
            estimated_operations_remaining=lamports // ESTIMATED_FEE_PER_OPERATION,
            address=self.address,
            alert_threshold_sol=self.alert_threshold_sol,
        )

    def can_afford_settlement(self) -> bool:
        try:
            lamports = self.rpc.get_balance(self.address)
        except RpcError as e:
            # submission itself will fail if the payer really is empty
            logger.warning("Fee reserve check failed, allowing settlement: %s", e.message)
            return True
        return lamports > MINIMUM_SETTLEMENT_FEE
