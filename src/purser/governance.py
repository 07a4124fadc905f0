"""
Settlement governance: allowlists, amount caps, rate limiting, replay
protection, sanctions screening and velocity circuit breaking.

The check functions are pure and return ``GovernanceCheck``; the stateful
guards are thread-safe and driven by an injectable monotonic clock.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from .errors import ConfigError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

MINUTE_SECONDS = 60.0
HOUR_SECONDS = 60 * MINUTE_SECONDS
DAY_SECONDS = 24 * HOUR_SECONDS
RATE_WINDOW_SECONDS = MINUTE_SECONDS
DEFAULT_REPLAY_TTL_SECONDS = 300
REPLAY_TTL_MARGIN_SECONDS = 60
REPLAY_EVICT_INTERVAL_SECONDS = MINUTE_SECONDS


@dataclass(frozen=True)
class GovernanceCheck:
    allowed: bool
    reason: Optional[str] = None


ALLOWED = GovernanceCheck(allowed=True)


def check_token_allowlist(asset: str, allowed: Optional[Sequence[str]]) -> GovernanceCheck:
    if not allowed or asset in allowed:
        return ALLOWED
    return GovernanceCheck(False, f"Token {asset} is not in the allowlist")


def check_recipient_allowlist(pay_to: str, allowed: Optional[Sequence[str]]) -> GovernanceCheck:
    if not allowed or pay_to in allowed:
        return ALLOWED
    return GovernanceCheck(False, f"Recipient {pay_to} is not in the allowlist")


def check_amount_cap(amount: int, cap: Optional[int]) -> GovernanceCheck:
    if cap is None or amount <= cap:
        return ALLOWED
    return GovernanceCheck(False, f"Amount {amount} exceeds cap {cap}")


def check_rate_limit(count: int, limit: int) -> GovernanceCheck:
    if count < limit:
        return ALLOWED
    return GovernanceCheck(False, f"Rate limit exceeded: {count}/{limit} per minute")


class RateCounter:
    """Counts settlements over a sliding one-minute window."""

    def __init__(self, clock: Clock = time.monotonic, window_seconds: float = RATE_WINDOW_SECONDS):
        self._clock = clock
        self._window = window_seconds
        self._events: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._events and self._events[0] <= now - self._window:
            self._events.popleft()

    def increment(self) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._events.append(now)

    def count(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._events)


class ReplayGuard:
    """
    In-memory signature deduplication with per-entry TTL.

    State resets on restart; an expired blockhash still stops a replay at
    the ledger, so the window this leaves is bounded by blockhash lifetime.
    Expired entries are swept at most once per ``REPLAY_EVICT_INTERVAL_SECONDS``
    as new signatures are recorded.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + REPLAY_EVICT_INTERVAL_SECONDS

    def check(self, signature: str) -> bool:
        """True when ``signature`` was already settled and has not expired."""
        with self._lock:
            expiry = self._entries.get(signature)
            if expiry is None:
                return False
            if expiry <= self._clock():
                del self._entries[signature]
                return False
            return True

    def record(self, signature: str, ttl_seconds: float) -> None:
        with self._lock:
            now = self._clock()
            self._entries[signature] = now + ttl_seconds
            if now >= self._next_sweep:
                swept = self._evict(now)
                if swept:
                    logger.debug("Evicted %d expired replay entries", swept)

    def evict(self) -> int:
        with self._lock:
            return self._evict(self._clock())

    def _evict(self, now: float) -> int:
        self._next_sweep = now + REPLAY_EVICT_INTERVAL_SECONDS
        expired = [sig for sig, expiry in self._entries.items() if expiry <= now]
        for sig in expired:
            del self._entries[sig]
        return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)


class SanctionsScreener:
    """
    Screens addresses against a static sanctions blocklist.

    The blocklist file is a JSON array of base58 addresses. With
    ``fail_closed`` set, screening before any list was loaded rejects.
    """

    def __init__(self, fail_closed: bool = True):
        self.fail_closed = fail_closed
        self._blocklist: frozenset[str] = frozenset()
        self._loaded = False

    @classmethod
    def from_file(cls, path: Optional[Path], fail_closed: bool = True) -> "SanctionsScreener":
        screener = cls(fail_closed)
        if path is None:
            return screener
        try:
            screener.load(path)
        except (OSError, ValueError) as e:
            if fail_closed:
                raise ConfigError([f"Cannot load sanctions blocklist from {path}: {e}"]) from e
            logger.warning("Sanctions blocklist %s unavailable, screening skipped: %s", path, e)
        return screener

    def load(self, path: Path) -> None:
        addresses = json.loads(Path(path).read_text())
        if not isinstance(addresses, list):
            raise ValueError("sanctions blocklist must be a JSON array of addresses")
        self._blocklist = frozenset(a for a in addresses if isinstance(a, str) and a)
        self._loaded = True
        logger.info("Loaded %d sanctioned addresses from %s", len(self._blocklist), path)

    def size(self) -> int:
        return len(self._blocklist)

    def screen(self, addresses: Sequence[str]) -> GovernanceCheck:
        if not self._loaded:
            if self.fail_closed:
                return GovernanceCheck(False, "Sanctions blocklist not loaded")
            return ALLOWED
        for address in addresses:
            if address in self._blocklist:
                return GovernanceCheck(False, f"Address {address} is on the sanctions list")
        return ALLOWED


@dataclass(frozen=True)
class CircuitBreakerLimits:
    max_settlements_per_hour: int = 100
    max_settlements_per_day: int = 500
    max_value_per_hour: int = 10_000_000
    max_same_recipient_per_minute: int = 5
    max_same_recipient_per_hour: int = 20
    max_global_per_minute: int = 30


@dataclass(frozen=True)
class _Settlement:
    at: float
    agent: str
    recipient: str
    amount: int


class CircuitBreaker:
    """
    Velocity limits over sliding windows, per agent, per recipient and globally.

    Records older than a day are dropped on every call. State resets on restart.
    """

    def __init__(self, limits: Optional[CircuitBreakerLimits] = None, clock: Clock = time.monotonic):
        self.limits = limits or CircuitBreakerLimits()
        self._clock = clock
        self._records: deque[_Settlement] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._records and self._records[0].at <= now - DAY_SECONDS:
            self._records.popleft()

    def check(self, agent: str, recipient: str, amount: int) -> GovernanceCheck:
        limits = self.limits
        with self._lock:
            now = self._clock()
            self._prune(now)
            records = list(self._records)

        def within(seconds: float, **match: str) -> list[_Settlement]:
            return [
                r for r in records
                if r.at > now - seconds and all(getattr(r, k) == v for k, v in match.items())
            ]

        to_recipient = within(MINUTE_SECONDS, recipient=recipient)
        if len(to_recipient) >= limits.max_same_recipient_per_minute:
            return GovernanceCheck(
                False,
                f"Same recipient {recipient} exceeded {limits.max_same_recipient_per_minute} settlements/minute",
            )
        to_recipient = within(HOUR_SECONDS, recipient=recipient)
        if len(to_recipient) >= limits.max_same_recipient_per_hour:
            return GovernanceCheck(
                False,
                f"Same recipient {recipient} exceeded {limits.max_same_recipient_per_hour} settlements/hour",
            )

        agent_hour = within(HOUR_SECONDS, agent=agent)
        if len(agent_hour) >= limits.max_settlements_per_hour:
            return GovernanceCheck(
                False, f"Agent {agent} exceeded {limits.max_settlements_per_hour} settlements/hour"
            )
        if len(within(DAY_SECONDS, agent=agent)) >= limits.max_settlements_per_day:
            return GovernanceCheck(
                False, f"Agent {agent} exceeded {limits.max_settlements_per_day} settlements/day"
            )
        hourly_value = sum(r.amount for r in agent_hour) + amount
        if hourly_value > limits.max_value_per_hour:
            return GovernanceCheck(
                False, f"Agent {agent} value {hourly_value} exceeds hourly cap {limits.max_value_per_hour}"
            )

        if len(within(MINUTE_SECONDS)) >= limits.max_global_per_minute:
            return GovernanceCheck(
                False, f"Global settlements exceeded {limits.max_global_per_minute}/minute"
            )
        return ALLOWED

    def record(self, agent: str, recipient: str, amount: int) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._records.append(_Settlement(now, agent, recipient, amount))
