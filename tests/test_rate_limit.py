"""
tests/test_rate_limit.py -- Persistent sliding-window limiter.

Time is passed explicitly (check(subject, now=...)) so windows and blocks
are exercised without sleeping.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from auth.rate_limit import LOGIN, REGISTER, RateLimitConfig, RateLimiter, purge_expired, rate_limit_headers

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


class TestLoginPolicy:
    def test_ten_attempts_allowed_then_blocked(self, store) -> None:
        limiter = RateLimiter(store, LOGIN)
        results = [limiter.check("10.0.0.1", now=at(i)) for i in range(10)]
        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == list(range(9, -1, -1))

        eleventh = limiter.check("10.0.0.1", now=at(10))
        assert not eleventh.allowed
        assert eleventh.retry_after == 900

    def test_block_outlasts_the_window(self, store) -> None:
        limiter = RateLimiter(store, LOGIN)
        for i in range(11):
            limiter.check("10.0.0.1", now=at(i))
        # The 60s window is long gone, the 15-minute block is not.
        later = limiter.check("10.0.0.1", now=at(310))
        assert not later.allowed
        assert later.retry_after == 900 - 300

    def test_block_expiry_starts_a_fresh_window(self, store) -> None:
        limiter = RateLimiter(store, LOGIN)
        for i in range(11):
            limiter.check("10.0.0.1", now=at(i))
        after = limiter.check("10.0.0.1", now=at(10 + 900 + 1))
        assert after.allowed
        assert after.remaining == LOGIN.max_requests - 1
        entry = store.get_rate_limit("10.0.0.1", LOGIN.name)
        assert entry.attempt_count == 1
        assert not entry.blocked

    def test_window_rollover_resets_count(self, store) -> None:
        limiter = RateLimiter(store, LOGIN)
        for i in range(10):
            limiter.check("10.0.0.1", now=at(i))
        rolled = limiter.check("10.0.0.1", now=at(61))
        assert rolled.allowed
        assert rolled.remaining == 9


class TestIsolation:
    def test_subjects_are_independent(self, store) -> None:
        limiter = RateLimiter(store, LOGIN)
        for i in range(11):
            limiter.check("10.0.0.1", now=at(i))
        assert limiter.check("10.0.0.2", now=at(12)).allowed

    def test_policies_are_independent(self, store) -> None:
        login = RateLimiter(store, LOGIN)
        for i in range(11):
            login.check("10.0.0.1", now=at(i))
        assert RateLimiter(store, REGISTER).check("10.0.0.1", now=at(12)).allowed

    def test_custom_policy(self, store) -> None:
        tight = RateLimiter(store, RateLimitConfig("tight", window_seconds=10, max_requests=2, block_seconds=30))
        assert tight.check("s", now=at(0)).allowed
        assert tight.check("s", now=at(1)).allowed
        rejected = tight.check("s", now=at(2))
        assert not rejected.allowed
        assert rejected.retry_after == 30


class TestDegradedMode:
    def test_store_failure_allows_request(self, store) -> None:
        limiter = RateLimiter(store, LOGIN)
        error = OperationalError("SELECT 1", {}, Exception("database is locked"))
        with patch.object(store, "get_rate_limit", side_effect=error):
            result = limiter.check("10.0.0.1", now=at(0))
        assert result.allowed
        assert result.degraded


class TestHeaders:
    def test_allowed_headers(self, store) -> None:
        result = RateLimiter(store, LOGIN).check("10.0.0.1", now=at(0))
        headers = rate_limit_headers(result)
        assert headers == {"X-RateLimit-Limit": "10", "X-RateLimit-Window": "60", "X-RateLimit-Remaining": "9"}

    def test_rejected_headers_carry_retry_after(self, store) -> None:
        limiter = RateLimiter(store, LOGIN)
        for i in range(11):
            result = limiter.check("10.0.0.1", now=at(i))
        headers = rate_limit_headers(result)
        assert headers["Retry-After"] == "900"
        assert headers["X-RateLimit-Remaining"] == "0"


class TestPurge:
    def test_purge_keeps_live_and_blocked_entries(self, store) -> None:
        limiter = RateLimiter(store, LOGIN)
        limiter.check("stale", now=at(0))
        for i in range(11):
            limiter.check("blocked", now=at(i))
        limiter.check("fresh", now=at(100))

        removed = purge_expired(store, now=at(120))
        assert removed == 1
        assert store.get_rate_limit("stale", LOGIN.name) is None
        assert store.get_rate_limit("blocked", LOGIN.name) is not None
        assert store.get_rate_limit("fresh", LOGIN.name) is not None

        # Once the block has run out the entry is purgeable too.
        purge_expired(store, now=at(2000))
        assert store.get_rate_limit("blocked", LOGIN.name) is None
