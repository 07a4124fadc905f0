"""Tests for settlement governance checks and guards."""

import json

import pytest

from purser.errors import ConfigError
from purser.governance import (
    CircuitBreaker,
    CircuitBreakerLimits,
    RateCounter,
    ReplayGuard,
    SanctionsScreener,
    check_amount_cap,
    check_rate_limit,
    check_recipient_allowlist,
    check_token_allowlist,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestChecks:
    def test_empty_allowlists_allow_everything(self):
        assert check_token_allowlist("mint", []).allowed
        assert check_recipient_allowlist("payee", None).allowed

    def test_allowlists(self):
        assert check_token_allowlist("a", ["a", "b"]).allowed
        denied = check_token_allowlist("c", ["a"])
        assert not denied.allowed
        assert "not in the allowlist" in denied.reason
        assert not check_recipient_allowlist("x", ["y"]).allowed

    def test_amount_cap(self):
        assert check_amount_cap(100, None).allowed
        assert check_amount_cap(100, 100).allowed
        assert not check_amount_cap(101, 100).allowed

    def test_rate_limit(self):
        assert check_rate_limit(59, 60).allowed
        assert not check_rate_limit(60, 60).allowed


class TestRateCounter:
    def test_window_slides(self):
        clock = FakeClock()
        counter = RateCounter(clock)
        counter.increment()
        counter.increment()
        assert counter.count() == 2
        clock.now += 61
        assert counter.count() == 0


class TestReplayGuard:
    def test_records_and_expires(self):
        clock = FakeClock()
        guard = ReplayGuard(clock)
        assert guard.check("sig") is False
        guard.record("sig", 360)
        assert guard.check("sig") is True
        assert guard.size() == 1
        clock.now += 361
        assert guard.check("sig") is False
        assert guard.size() == 0

    def test_evict(self):
        clock = FakeClock()
        guard = ReplayGuard(clock)
        guard.record("a", 10)
        guard.record("b", 100)
        clock.now += 50
        assert guard.evict() == 1
        assert guard.size() == 1

    def test_expired_entries_swept_on_record(self):
        clock = FakeClock()
        guard = ReplayGuard(clock)
        for n in range(5):
            guard.record(f"old-{n}", 10)
        assert guard.size() == 5

        clock.now += 30
        guard.record("fresh", 10)
        # swept at most once a minute
        assert guard.size() == 6

        clock.now += 31
        guard.record("newest", 10)
        assert guard.size() == 1


class TestSanctionsScreener:
    def test_blocks_listed_address(self, tmp_path):
        path = tmp_path / "sdn.json"
        path.write_text(json.dumps(["bad1", "bad2", 7]))
        screener = SanctionsScreener.from_file(path)
        assert screener.size() == 2
        assert screener.screen(["ok", "fine"]).allowed
        result = screener.screen(["ok", "bad2"])
        assert not result.allowed
        assert result.reason == "Address bad2 is on the sanctions list"

    def test_unloaded_fail_closed(self):
        result = SanctionsScreener(fail_closed=True).screen(["ok"])
        assert not result.allowed
        assert "not loaded" in result.reason

    def test_unloaded_fail_open(self):
        assert SanctionsScreener(fail_closed=False).screen(["ok"]).allowed

    def test_unreadable_list_fail_closed_raises(self, tmp_path):
        with pytest.raises(ConfigError):
            SanctionsScreener.from_file(tmp_path / "missing.json", fail_closed=True)

    def test_unreadable_list_fail_open(self, tmp_path):
        path = tmp_path / "sdn.json"
        path.write_text('{"not": "a list"}')
        screener = SanctionsScreener.from_file(path, fail_closed=False)
        assert screener.screen(["anything"]).allowed


class TestCircuitBreaker:
    def test_same_recipient_per_minute(self):
        clock = FakeClock()
        breaker = CircuitBreaker(CircuitBreakerLimits(max_same_recipient_per_minute=2), clock)
        breaker.record("agent", "shop", 1)
        breaker.record("other", "shop", 1)
        tripped = breaker.check("agent", "shop", 1)
        assert not tripped.allowed
        assert tripped.reason == "Same recipient shop exceeded 2 settlements/minute"
        assert breaker.check("agent", "elsewhere", 1).allowed

        clock.now += 61
        assert breaker.check("agent", "shop", 1).allowed

    def test_agent_hourly_count(self):
        clock = FakeClock()
        breaker = CircuitBreaker(CircuitBreakerLimits(max_settlements_per_hour=3), clock)
        for i in range(3):
            breaker.record("agent", f"shop{i}", 1)
        assert breaker.check("agent", "shop9", 1).reason == "Agent agent exceeded 3 settlements/hour"
        assert breaker.check("someone-else", "shop9", 1).allowed

    def test_agent_hourly_value(self):
        clock = FakeClock()
        breaker = CircuitBreaker(CircuitBreakerLimits(max_value_per_hour=1_000), clock)
        breaker.record("agent", "shop", 600)
        assert breaker.check("agent", "shop2", 400).allowed
        result = breaker.check("agent", "shop2", 401)
        assert result.reason == "Agent agent value 1001 exceeds hourly cap 1000"

    def test_daily_window(self):
        clock = FakeClock()
        breaker = CircuitBreaker(CircuitBreakerLimits(max_settlements_per_day=2), clock)
        breaker.record("agent", "a", 1)
        clock.now += 2 * 3600
        breaker.record("agent", "b", 1)
        clock.now += 2 * 3600
        assert "settlements/day" in breaker.check("agent", "c", 1).reason
        clock.now += 24 * 3600
        assert breaker.check("agent", "c", 1).allowed

    def test_global_per_minute(self):
        clock = FakeClock()
        breaker = CircuitBreaker(CircuitBreakerLimits(max_global_per_minute=2), clock)
        breaker.record("a1", "s1", 1)
        breaker.record("a2", "s2", 1)
        assert breaker.check("a3", "s3", 1).reason == "Global settlements exceeded 2/minute"
