"""
api/limiter.py -- Shared slowapi limiter for coarse per-IP throttling.

Applied with @limiter.limit() on public endpoints that do not touch
credentials (SSO verification, client info, provider listing). Credential
endpoints use the persistent sliding-window limiter in auth/rate_limit.py
instead, whose counters survive restarts and escalate to blocks.

A single shared instance is required: separate Limiter objects would keep
separate counters and never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

PUBLIC_LIMIT = get_settings().public_rate_limit
