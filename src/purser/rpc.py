"""
Minimal Solana JSON-RPC 2.0 client.

Only the calls Purser needs: blockhash lifetime anchors, raw account reads,
balances, simulation and submission. Transport and JSON-RPC errors are raised
as ``RpcError``; a missing account is ``None``, not an error.
"""

from __future__ import annotations

import base64
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from .errors import RpcError

logger = logging.getLogger(__name__)

DEFAULT_COMMITMENT = "confirmed"


@dataclass(frozen=True)
class LatestBlockhash:
    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class AccountInfo:
    owner: str
    data: bytes
    lamports: int = 0
    executable: bool = False


@dataclass
class SimulationOutcome:
    err: Any = None
    logs: list[str] = field(default_factory=list)
    units_consumed: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.err is None


class LedgerRpc(Protocol):
    """The ledger query / simulate / submit capability."""

    def get_latest_blockhash(self) -> LatestBlockhash: ...

    def get_account_info(self, address: str) -> Optional[AccountInfo]: ...

    def get_balance(self, address: str) -> int: ...

    def simulate_transaction(self, transaction_b64: str) -> SimulationOutcome: ...

    def send_transaction(self, transaction_b64: str) -> str: ...

    def is_blockhash_valid(self, blockhash: str) -> bool: ...


class SolanaRpc:
    """JSON-RPC client over httpx."""

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 30.0,
        commitment: str = DEFAULT_COMMITMENT,
        http: Optional[httpx.Client] = None,
    ):
        self.endpoint = endpoint
        self.commitment = commitment
        self._http = http or httpx.Client(timeout=timeout_seconds)
        self._ids = itertools.count(1)

    def _call(self, method: str, params: Optional[list] = None) -> Any:
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        try:
            response = self._http.post(self.endpoint, json=request)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise RpcError(f"{method} failed: {e}", cause=e) from e
        except ValueError as e:
            raise RpcError(f"{method} returned invalid JSON", cause=e) from e

        if not isinstance(body, dict):
            raise RpcError(f"{method} returned a malformed response", cause=body)
        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RpcError(f"{method} error: {message}", cause=error)
        if "result" not in body:
            raise RpcError(f"{method} returned no result", cause=body)
        return body["result"]

    def get_latest_blockhash(self) -> LatestBlockhash:
        result = self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = result["value"]
        return LatestBlockhash(
            blockhash=value["blockhash"],
            last_valid_block_height=int(value["lastValidBlockHeight"]),
        )

    def get_account_info(self, address: str) -> Optional[AccountInfo]:
        result = self._call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if value is None:
            return None
        data_field = value.get("data") or ["", "base64"]
        try:
            data = base64.b64decode(data_field[0])
        except (ValueError, TypeError, IndexError) as e:
            raise RpcError(f"getAccountInfo returned undecodable data for {address}", cause=e) from e
        return AccountInfo(
            owner=value["owner"],
            data=data,
            lamports=int(value.get("lamports", 0)),
            executable=bool(value.get("executable", False)),
        )

    def get_balance(self, address: str) -> int:
        result = self._call("getBalance", [address, {"commitment": self.commitment}])
        return int(result["value"])

    def simulate_transaction(self, transaction_b64: str) -> SimulationOutcome:
        result = self._call(
            "simulateTransaction",
            [
                transaction_b64,
                {"encoding": "base64", "commitment": self.commitment, "sigVerify": False},
            ],
        )
        value = result["value"]
        return SimulationOutcome(
            err=value.get("err"),
            logs=list(value.get("logs") or []),
            units_consumed=value.get("unitsConsumed"),
        )

    def send_transaction(self, transaction_b64: str) -> str:
        signature = self._call(
            "sendTransaction",
            [
                transaction_b64,
                {"encoding": "base64", "preflightCommitment": self.commitment},
            ],
        )
        logger.info("Submitted transaction %s", signature)
        return signature

    def is_blockhash_valid(self, blockhash: str) -> bool:
        result = self._call("isBlockhashValid", [blockhash, {"commitment": "processed"}])
        return bool(result["value"])

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
