"""
auth/rate_limit.py -- Persistent sliding-window rate limiter with escalating blocks.

Algorithm (per (subject, endpoint) key, one RateLimitEntry row):
  1. Entry blocked and blocked_until in the future -> reject with the
     remaining block time as retry_after.
  2. No entry, or its window has passed -> reset to count=1 with a new
     window; allow.
  3. Count already at the limit -> block for block_seconds (which may be much
     longer than the window), increment, reject.
  4. Otherwise -> increment, allow; remaining = limit - count.

This limiter guards credential endpoints (login, registration, password
change, token) by client IP, and each API key by its own id with the key's
own budget. slowapi (api/limiter.py) is a separate, in-memory, coarse
throttle for public read endpoints; it does not replace this one.

Degraded mode [F2]: if the credential store raises, the request is ALLOWED
and a warning is logged. Availability of login beats strict enforcement
while the store is impaired; the log line makes the gap visible.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from auth.models import ApiKey
    from auth.store import CredentialStore

logger = logging.getLogger("elixpo.rate_limit")


@dataclass(frozen=True)
class RateLimitConfig:
    name: str
    window_seconds: int
    max_requests: int
    block_seconds: int


LOGIN = RateLimitConfig("login", window_seconds=60, max_requests=10, block_seconds=15 * 60)
REGISTER = RateLimitConfig("register", window_seconds=60, max_requests=5, block_seconds=30 * 60)
PASSWORD_RESET = RateLimitConfig("password_reset", window_seconds=3600, max_requests=3, block_seconds=3600)
TOKEN = RateLimitConfig("token", window_seconds=60, max_requests=30, block_seconds=5 * 60)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    window_seconds: int
    remaining: int
    reset_at: datetime
    retry_after: int = 0
    degraded: bool = False


class RateLimiter:
    """Applies one RateLimitConfig against the credential store.

    Usage:
        result = RateLimiter(store, LOGIN).check(client_ip)
        if not result.allowed:
            raise RateLimitedError("...", retry_after=result.retry_after)
    """

    def __init__(self, store: CredentialStore, config: RateLimitConfig) -> None:
        self._store = store
        self.config = config

    @classmethod
    def for_api_key(cls, store: CredentialStore, key: ApiKey) -> RateLimiter:
        """Limiter using the key's own budget. A tripped key is blocked for one window."""
        config = RateLimitConfig(
            name="api_key",
            window_seconds=key.rate_limit_window,
            max_requests=key.rate_limit_requests,
            block_seconds=key.rate_limit_window,
        )
        return cls(store, config)

    def check(self, subject: str, now: datetime | None = None) -> RateLimitResult:
        """Count one attempt by `subject` and decide whether it may proceed."""
        now = now or datetime.now(timezone.utc)
        try:
            return self._check(subject, now)
        except SQLAlchemyError:
            logger.warning(
                "degraded: rate limit store unavailable for %s/%s -- allowing request",
                self.config.name,
                subject,
                exc_info=True,
            )
            return RateLimitResult(
                allowed=True,
                limit=self.config.max_requests,
                window_seconds=self.config.window_seconds,
                remaining=self.config.max_requests,
                reset_at=now + timedelta(seconds=self.config.window_seconds),
                degraded=True,
            )

    def _check(self, subject: str, now: datetime) -> RateLimitResult:
        cfg = self.config
        entry = self._store.get_rate_limit(subject, cfg.name)

        # 1. Active block
        if entry is not None and entry.blocked and entry.blocked_until is not None and entry.blocked_until > now:
            return self._rejected(entry.blocked_until, now)

        # 2. First attempt, or the window has rolled over
        if entry is None or entry.window_reset_at <= now:
            reset_at = now + timedelta(seconds=cfg.window_seconds)
            self._store.reset_rate_limit(subject, cfg.name, now, reset_at)
            return RateLimitResult(
                allowed=True,
                limit=cfg.max_requests,
                window_seconds=cfg.window_seconds,
                remaining=max(cfg.max_requests - 1, 0),
                reset_at=reset_at,
            )

        # 3. Limit reached inside the window -> escalate to a block
        if entry.attempt_count >= cfg.max_requests:
            blocked_until = now + timedelta(seconds=cfg.block_seconds)
            self._store.block_rate_limit(subject, cfg.name, now, blocked_until)
            logger.warning("rate limit tripped: %s/%s blocked for %ds", cfg.name, subject, cfg.block_seconds)
            return self._rejected(blocked_until, now)

        # 4. Within budget
        self._store.increment_rate_limit(subject, cfg.name, now)
        count = entry.attempt_count + 1
        return RateLimitResult(
            allowed=True,
            limit=cfg.max_requests,
            window_seconds=cfg.window_seconds,
            remaining=max(cfg.max_requests - count, 0),
            reset_at=entry.window_reset_at,
        )

    def _rejected(self, blocked_until: datetime, now: datetime) -> RateLimitResult:
        return RateLimitResult(
            allowed=False,
            limit=self.config.max_requests,
            window_seconds=self.config.window_seconds,
            remaining=0,
            reset_at=blocked_until,
            retry_after=max(math.ceil((blocked_until - now).total_seconds()), 1),
        )


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """X-RateLimit-* headers for a limiter decision, plus Retry-After when rejected."""
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Window": str(result.window_seconds),
        "X-RateLimit-Remaining": str(result.remaining),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def purge_expired(store: CredentialStore, now: datetime | None = None) -> int:
    """Delete entries that are neither inside a window nor blocked. Returns rows removed."""
    return store.delete_expired_rate_limits(now or datetime.now(timezone.utc))
