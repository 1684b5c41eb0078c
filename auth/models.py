"""
auth/models.py -- Domain dataclasses for identity and access control entities.

Pattern: Data class (pure data container, zero logic). The store maps rows to
these; services and routes do the work. Timestamps that drive decisions
(expiry, windows, blocks) are timezone-aware datetimes; purely informational
ones stay ISO 8601 strings as stored.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from auth.capabilities import ApiKeyScope, OAuthScope, PermissionName, Provider


@dataclass
class Identity:
    """A (provider, provider subject) pair linked to one principal.

    The pair is globally unique. Password accounts get an "email" identity
    whose subject is the normalised email address.
    """

    principal_id: str
    provider: Provider
    provider_user_id: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class Principal:
    """An end user. password_hash is None for provider-only accounts."""

    email: str
    id: str | None = None
    password_hash: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None
    identities: list[Identity] = field(default_factory=list)

    @property
    def providers(self) -> list[str]:
        return sorted({i.provider.value for i in self.identities})


@dataclass
class CredentialRecord:
    """Persisted HMAC of an issued refresh token.

    Created at issuance, revoked on logout or rotation, otherwise left to
    expire. Never updated for any other reason.
    """

    principal_id: str
    token_hash: str
    expires_at: datetime
    id: str | None = None
    client_id: str | None = None
    created_at: str | None = None
    revoked_at: datetime | None = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class AuthorizationRequest:
    """One in-flight authorization handshake.

    Lifecycle:
      pending        -- created by /authorize, waiting for the provider callback
      authenticated  -- consumed_at set, principal_id bound
      code issued    -- consent granted, code_hash set
      redeemed       -- code_consumed_at set by /token

    provider is None when the end user was already signed in at /authorize
    and only consent is pending.
    """

    state: str
    client_id: str
    redirect_uri: str
    expires_at: datetime
    id: str | None = None
    provider: Provider | None = None
    nonce: str | None = None
    pkce_verifier: str | None = None
    scopes: list[OAuthScope] = field(default_factory=list)
    client_state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    principal_id: str | None = None
    consumed_at: datetime | None = None
    code_hash: str | None = None
    code_expires_at: datetime | None = None
    code_consumed_at: datetime | None = None
    created_at: str | None = None


@dataclass
class ClientApplication:
    """A registered third-party OAuth client. The secret is stored as an HMAC only."""

    client_id: str
    name: str
    secret_hash: str
    redirect_uris: list[str]
    scopes: list[OAuthScope]
    id: str | None = None
    owner_id: str | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class RateLimitEntry:
    """Sliding-window counter for one (subject, endpoint) key."""

    subject: str
    endpoint: str
    attempt_count: int
    window_reset_at: datetime
    id: str | None = None
    blocked: bool = False
    blocked_until: datetime | None = None
    first_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None


@dataclass(frozen=True)
class Permission:
    id: str
    name: PermissionName
    display_name: str = ""
    description: str = ""

    @property
    def resource(self) -> str:
        return self.name.resource.value

    @property
    def action(self) -> str:
        return self.name.action.value


@dataclass
class Role:
    name: str
    id: str | None = None
    description: str = ""
    system_role: bool = False
    created_at: str | None = None


@dataclass
class RoleAssignment:
    principal_id: str
    role_id: str
    id: str | None = None
    assigned_by: str | None = None
    assigned_at: str | None = None


@dataclass
class ApiKey:
    """A scoped machine credential.

    key_hash is HMAC-SHA256(SECRET_KEY, raw_key); key_prefix (first 8 chars)
    is for display only. The raw key is returned once at creation.
    """

    principal_id: str
    name: str
    key_hash: str
    key_prefix: str
    scopes: frozenset[ApiKeyScope]
    id: str | None = None
    description: str | None = None
    rate_limit_requests: int = 1000
    rate_limit_window: int = 60
    expires_at: datetime | None = None
    revoked_at: datetime | None = None
    last_used_at: str | None = None
    created_at: str | None = None
    created_by_ip: str | None = None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class ApiKeyUsage:
    api_key_id: str
    endpoint: str
    method: str
    status_code: int
    response_time_ms: int
    id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: str | None = None


@dataclass
class AuditEvent:
    """Append-only record of a security-relevant outcome."""

    event_type: str
    status: str  # "success" | "failure"
    id: str | None = None
    principal_id: str | None = None
    provider: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    error_message: str | None = None
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Value types (never persisted)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    email: str
    token_type: str  # "access" | "refresh"
    issued_at: datetime
    expires_at: datetime
    provider: str | None = None
    token_id: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    scope: str | None = None


@dataclass(frozen=True)
class NormalizedProfile:
    """Provider-neutral view of an external identity."""

    subject_id: str
    email: str
    name: str | None = None
    avatar_url: str | None = None
