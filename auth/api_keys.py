"""
auth/api_keys.py -- Scoped machine credentials.

Security design:
  Keys are secrets.token_hex(32): 32 random bytes, 64 hex chars, 256 bits of
  entropy. Only HMAC-SHA256(SECRET_KEY, key) and an 8-character display
  prefix are stored; the plaintext is returned once by generate_key().

  Scopes are the key's own closed set (ApiKeyScope). Keys never inherit the
  owner's RBAC roles -- a key minted by a super admin can do exactly what its
  scopes say.

  Each key carries its own budget (requests per window). Enforcement reuses
  the sliding-window limiter keyed by "api-key:<id>", independent of the
  per-IP limiter on login.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from auth.capabilities import ApiKeyScope
from auth.errors import InvalidRequestError, NotFoundError
from auth.models import ApiKey, ApiKeyUsage
from auth.rate_limit import RateLimiter, RateLimitResult
from auth.tokens import hash_secret

if TYPE_CHECKING:
    from auth.store import CredentialStore
    from core.config import Settings

logger = logging.getLogger("elixpo.api_keys")

PREFIX_LENGTH = 8


# ---------------------------------------------------------------------------
# Scope checks
# ---------------------------------------------------------------------------


def has_scope(key: ApiKey, scope: ApiKeyScope) -> bool:
    return scope in key.scopes


def has_all_scopes(key: ApiKey, scopes: Iterable[ApiKeyScope]) -> bool:
    return set(scopes) <= key.scopes


def has_any_scope(key: ApiKey, scopes: Iterable[ApiKeyScope]) -> bool:
    required = set(scopes)
    return bool(required) and bool(required & key.scopes)


# ---------------------------------------------------------------------------
# Authority
# ---------------------------------------------------------------------------


class ApiKeyAuthority:
    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    def hash_key(self, raw_key: str) -> str:
        return hash_secret(self._settings.secret_key, raw_key)

    def generate_key(
        self,
        principal_id: str,
        name: str,
        scopes: Iterable[ApiKeyScope],
        expires_at: datetime | None = None,
        description: str | None = None,
        rate_limit_requests: int = 1000,
        rate_limit_window: int = 60,
        created_by_ip: str | None = None,
    ) -> tuple[str, ApiKey]:
        """Create a key and return (plaintext, record). The plaintext is never stored.

        [H3] Enforces the per-principal cap on active keys so a compromised
        account cannot mint an unbounded number of credentials.
        """
        scope_set = frozenset(scopes)
        if not scope_set:
            raise InvalidRequestError("At least one scope is required.")
        if rate_limit_requests < 1 or rate_limit_window < 1:
            raise InvalidRequestError("Rate limit budget must be positive.")
        if expires_at is not None and expires_at <= datetime.now(timezone.utc):
            raise InvalidRequestError("Expiry must be in the future.")
        cap = self._settings.max_api_keys_per_principal
        if len(self._store.list_api_keys(principal_id)) >= cap:
            raise InvalidRequestError(f"Maximum of {cap} API keys per user. Revoke an existing key first.")

        raw_key = secrets.token_hex(32)
        record = self._store.insert_api_key(
            ApiKey(
                principal_id=principal_id,
                name=name,
                description=description,
                key_hash=self.hash_key(raw_key),
                key_prefix=raw_key[:PREFIX_LENGTH],
                scopes=scope_set,
                rate_limit_requests=rate_limit_requests,
                rate_limit_window=rate_limit_window,
                expires_at=expires_at,
                created_by_ip=created_by_ip,
            )
        )
        logger.info("api key %s created for principal %s", record.id, principal_id)
        return raw_key, record

    def validate_key(self, raw_key: str) -> ApiKey | None:
        """Return the live record for a presented key, or None.

        Revoked and expired keys are None. A successful validation stamps
        last_used_at.
        """
        if not raw_key:
            return None
        key = self._store.get_api_key_by_hash(self.hash_key(raw_key))
        if key is None or key.revoked:
            return None
        if key.expires_at is not None and key.expires_at <= datetime.now(timezone.utc):
            return None
        self._store.touch_api_key(key.id)
        return key

    def check_rate_limit(self, key: ApiKey, now: datetime | None = None) -> RateLimitResult:
        return RateLimiter.for_api_key(self._store, key).check(f"api-key:{key.id}", now=now)

    def list_keys(self, principal_id: str, include_revoked: bool = False) -> list[ApiKey]:
        return self._store.list_api_keys(principal_id, include_revoked=include_revoked)

    def get_owned_key(self, key_id: str, principal_id: str) -> ApiKey:
        key = self._store.get_api_key(key_id)
        if key is None or key.principal_id != principal_id:
            raise NotFoundError("API key not found.")
        return key

    def revoke_key(self, key_id: str, principal_id: str) -> None:
        if not self._store.revoke_api_key(key_id, principal_id):
            raise NotFoundError("API key not found or already revoked.")
        logger.info("api key %s revoked by principal %s", key_id, principal_id)

    def update_key(self, key_id: str, principal_id: str, **fields) -> ApiKey:
        """Update name, description, scopes, rate_limit_requests or rate_limit_window."""
        if "scopes" in fields:
            fields["scopes"] = frozenset(fields["scopes"])
            if not fields["scopes"]:
                raise InvalidRequestError("At least one scope is required.")
        if fields and not self._store.update_api_key(key_id, principal_id, **fields):
            raise NotFoundError("API key not found or revoked.")
        return self.get_owned_key(key_id, principal_id)

    # ------------------------------------------------------------------
    # Usage log
    # ------------------------------------------------------------------

    def log_usage(
        self,
        key: ApiKey,
        endpoint: str,
        method: str,
        status_code: int,
        response_time_ms: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Append a usage row. Failures are logged; they never fail the request."""
        try:
            self._store.insert_api_key_usage(
                ApiKeyUsage(
                    api_key_id=key.id,
                    endpoint=endpoint,
                    method=method,
                    status_code=status_code,
                    response_time_ms=response_time_ms,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
        except SQLAlchemyError:
            logger.warning("could not record usage for api key %s", key.id, exc_info=True)

    def usage_stats(self, key_id: str, principal_id: str, hours: int = 24) -> dict:
        self.get_owned_key(key_id, principal_id)
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        return self._store.api_key_usage_stats(key_id, since)
