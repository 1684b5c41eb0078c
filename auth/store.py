"""
auth/store.py -- SQLAlchemy Core persistence layer for the security core.

Pattern: Repository + Data Mapper. CredentialStore is the repository; the
_row_to_* functions are the mappers. Services never touch SQL directly and
the store holds no policy: every method takes explicit parameters and returns
dataclasses, booleans, or None for "not found".

Concurrency:
  The store is shared by concurrent requests with no application-level lock.
  Single-use transitions (auth request consumption, code redemption,
  refresh-token revocation) are compare-and-swap UPDATEs guarded by
  "column IS NULL" -- rowcount tells the caller whether it won the race.
  Rate-limit increments are computed in SQL (attempt_count + 1) so concurrent
  requests never lose an increment; the counter a caller reads back may lag by
  the number of requests racing it.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Secrets never reach this module -- only their HMACs.

Timestamps are stored as ISO 8601 strings in UTC with fixed microsecond
precision, so lexicographic comparison in SQL matches chronological order.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.capabilities import (
    SEEDED_PERMISSIONS,
    SYSTEM_ROLE_INFO,
    ApiKeyScope,
    OAuthScope,
    PermissionName,
    Provider,
    seeded_role_permissions,
)
from auth.models import (
    ApiKey,
    ApiKeyUsage,
    AuditEvent,
    AuthorizationRequest,
    ClientApplication,
    CredentialRecord,
    Identity,
    Permission,
    Principal,
    RateLimitEntry,
    Role,
    RoleAssignment,
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for provider-only accounts
    Column("display_name", String(255)),
    Column("avatar_url", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False),
    Column("last_login", String(40)),
)

_identities = Table(
    "identities",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("provider", String(30), nullable=False),
    Column("provider_user_id", String(255), nullable=False),
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("provider", "provider_user_id", name="uq_identity_provider_subject"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("client_id", String(64)),
    Column("expires_at", String(40), nullable=False),
    Column("revoked_at", String(40)),
    Column("created_at", String(40), nullable=False),
)

_auth_requests = Table(
    "auth_requests",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("state", String(128), nullable=False, unique=True),
    Column("nonce", String(128)),
    Column("pkce_verifier", String(128)),
    Column("provider", String(30)),
    Column("client_id", String(64), nullable=False),
    Column("redirect_uri", Text, nullable=False),
    Column("scopes", Text, nullable=False),  # JSON array
    Column("client_state", Text),
    Column("code_challenge", String(128)),
    Column("code_challenge_method", String(10)),
    Column("user_id", String(36)),
    Column("consumed_at", String(40)),
    Column("code_hash", String(64), unique=True),
    Column("code_expires_at", String(40)),
    Column("code_consumed_at", String(40)),
    Column("expires_at", String(40), nullable=False),
    Column("created_at", String(40), nullable=False),
)

_oauth_clients = Table(
    "oauth_clients",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("client_id", String(64), nullable=False, unique=True),
    Column("secret_hash", String(64), nullable=False),
    Column("name", String(255), nullable=False),
    Column("redirect_uris", Text, nullable=False),  # JSON array
    Column("scopes", Text, nullable=False),  # JSON array
    Column("owner_id", String(36)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False),
)

_rate_limits = Table(
    "rate_limits",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("subject", String(255), nullable=False),
    Column("endpoint", String(64), nullable=False),
    Column("attempt_count", Integer, nullable=False, server_default="1"),
    Column("first_attempt_at", String(40), nullable=False),
    Column("last_attempt_at", String(40), nullable=False),
    Column("window_reset_at", String(40), nullable=False),
    Column("is_blocked", Integer, nullable=False, server_default="0"),
    Column("blocked_until", String(40)),
    UniqueConstraint("subject", "endpoint", name="uq_rate_limit_key"),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("system_role", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(64), nullable=False, unique=True),  # resource:action
    Column("display_name", String(100), nullable=False, server_default=""),
    Column("description", Text, nullable=False, server_default=""),
    Column("resource", String(32), nullable=False),
    Column("action", String(32), nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", String(64), primary_key=True),
    Column("permission_id", String(64), primary_key=True),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("role_id", String(64), nullable=False),
    Column("assigned_by", String(36)),
    Column("assigned_at", String(40), nullable=False),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(8), nullable=False),  # display only
    Column("scopes", Text, nullable=False),  # JSON array
    Column("rate_limit_requests", Integer, nullable=False, server_default="1000"),
    Column("rate_limit_window", Integer, nullable=False, server_default="60"),
    Column("expires_at", String(40)),
    Column("revoked_at", String(40)),
    Column("last_used_at", String(40)),
    Column("created_by_ip", String(64)),
    Column("created_at", String(40), nullable=False),
)

_api_key_usage = Table(
    "api_key_usage",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("api_key_id", String(36), nullable=False, index=True),
    Column("endpoint", Text, nullable=False),
    Column("method", String(10), nullable=False),
    Column("status_code", Integer, nullable=False),
    Column("response_time_ms", Integer, nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(40), nullable=False),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("event_type", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("user_id", String(36), index=True),
    Column("provider", String(30)),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("error_message", Text),
    Column("created_at", String(40), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind writers."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(_utcnow())


def _parse(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for every persisted security entity.

    Usage:
        store = CredentialStore("sqlite:///elixpo_accounts.db")
        principal = store.create_principal("a@x.com", password_hash=hash_password("pw12345678"))
        store.close()

    One instance is created by the app lifespan and handed to services per
    request through app.state -- there is no module-level handle.
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ensure_rbac_catalogue()

    def _ensure_rbac_catalogue(self) -> None:
        """Seed system roles, the permission catalogue and default grants.

        This is the bootstrap path: the only writer allowed to touch system
        roles. Idempotent -- existing rows are left alone, so operator changes
        to non-system data survive restarts.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            existing_roles = set(conn.execute(select(_roles.c.id)).scalars())
            for role, (name, description) in SYSTEM_ROLE_INFO.items():
                if role.value not in existing_roles:
                    conn.execute(
                        _roles.insert().values(
                            id=role.value, name=name, description=description, system_role=1, created_at=now
                        )
                    )
            existing_perms = set(conn.execute(select(_permissions.c.name)).scalars())
            for perm, (display_name, description) in SEEDED_PERMISSIONS.items():
                if perm.value not in existing_perms:
                    conn.execute(
                        _permissions.insert().values(
                            id=_permission_id(perm),
                            name=perm.value,
                            display_name=display_name,
                            description=description,
                            resource=perm.resource.value,
                            action=perm.action.value,
                        )
                    )
            grants = set(conn.execute(select(_role_permissions.c.role_id, _role_permissions.c.permission_id)).all())
            for role in SYSTEM_ROLE_INFO:
                # Only a system role with no grants at all is seeded. Grants removed
                # from a seeded role stay removed across restarts.
                if any(role_id == role.value for role_id, _ in grants):
                    continue
                for perm in seeded_role_permissions(role):
                    conn.execute(_role_permissions.insert().values(role_id=role.value, permission_id=_permission_id(perm)))
            conn.commit()

    # ------------------------------------------------------------------
    # Principals and identities
    # ------------------------------------------------------------------

    def create_principal(
        self,
        email: str,
        password_hash: str | None = None,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Principal:
        """Insert a principal. Raises IntegrityError if the email is taken."""
        principal_id = _new_id()
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=principal_id,
                    email=email,
                    password_hash=password_hash,
                    display_name=display_name,
                    avatar_url=avatar_url,
                    is_active=1,
                    created_at=now,
                )
            )
            conn.commit()
        return Principal(
            id=principal_id,
            email=email,
            password_hash=password_hash,
            display_name=display_name,
            avatar_url=avatar_url,
            created_at=now,
        )

    def get_principal(self, principal_id: str) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == principal_id)).fetchone()
            if row is None:
                return None
            identities = conn.execute(_identities.select().where(_identities.c.user_id == principal_id)).fetchall()
        return _row_to_principal(row, identities)

    def get_principal_by_email(self, email: str) -> Principal | None:
        """Exact match on the stored (already lower-cased) email."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
            if row is None:
                return None
            identities = conn.execute(_identities.select().where(_identities.c.user_id == row.id)).fetchall()
        return _row_to_principal(row, identities)

    def update_principal(self, principal_id: str, **fields) -> bool:
        """Update mutable fields: password_hash, display_name, avatar_url, is_active."""
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == principal_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, principal_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == principal_id).values(last_login=_now_iso()))
            conn.commit()

    def get_identity(self, provider: Provider, provider_user_id: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where(
                    (_identities.c.provider == provider.value) & (_identities.c.provider_user_id == provider_user_id)
                )
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def link_identity(self, principal_id: str, provider: Provider, provider_user_id: str) -> Identity:
        """Link an external identity. Raises IntegrityError if the pair is already linked."""
        identity = Identity(
            id=_new_id(),
            principal_id=principal_id,
            provider=provider,
            provider_user_id=provider_user_id,
            created_at=_now_iso(),
        )
        with self.engine.connect() as conn:
            conn.execute(
                _identities.insert().values(
                    id=identity.id,
                    user_id=principal_id,
                    provider=provider.value,
                    provider_user_id=provider_user_id,
                    created_at=identity.created_at,
                )
            )
            conn.commit()
        return identity

    def list_principals(self, limit: int = 100, offset: int = 0) -> list[Principal]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.created_at).limit(limit).offset(offset)).fetchall()
        return [_row_to_principal(r, []) for r in rows]

    # ------------------------------------------------------------------
    # Refresh-token credential records
    # ------------------------------------------------------------------

    def insert_refresh_token(
        self,
        principal_id: str,
        token_hash: str,
        expires_at: datetime,
        client_id: str | None = None,
    ) -> CredentialRecord:
        record = CredentialRecord(
            id=_new_id(),
            principal_id=principal_id,
            token_hash=token_hash,
            expires_at=expires_at,
            client_id=client_id,
            created_at=_now_iso(),
        )
        with self.engine.connect() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    id=record.id,
                    user_id=principal_id,
                    token_hash=token_hash,
                    client_id=client_id,
                    expires_at=_iso(expires_at),
                    created_at=record.created_at,
                )
            )
            conn.commit()
        return record

    def get_refresh_token(self, token_hash: str) -> CredentialRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def revoke_refresh_token(self, record_id: str, when: datetime | None = None) -> bool:
        """Mark a record revoked. Returns False if it was already revoked (CAS)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == record_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_iso(when or _utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_refresh_tokens(self, principal_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == principal_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_now_iso())
            )
            conn.commit()
        return result.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < _iso(now)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Authorization requests
    # ------------------------------------------------------------------

    def insert_auth_request(self, request: AuthorizationRequest) -> AuthorizationRequest:
        request.id = request.id or _new_id()
        request.created_at = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _auth_requests.insert().values(
                    id=request.id,
                    state=request.state,
                    nonce=request.nonce,
                    pkce_verifier=request.pkce_verifier,
                    provider=request.provider.value if request.provider else None,
                    client_id=request.client_id,
                    redirect_uri=request.redirect_uri,
                    scopes=json.dumps([s.value for s in request.scopes]),
                    client_state=request.client_state,
                    code_challenge=request.code_challenge,
                    code_challenge_method=request.code_challenge_method,
                    user_id=request.principal_id,
                    consumed_at=_iso(request.consumed_at),
                    expires_at=_iso(request.expires_at),
                    created_at=request.created_at,
                )
            )
            conn.commit()
        return request

    def get_auth_request_by_state(self, state: str) -> AuthorizationRequest | None:
        with self.engine.connect() as conn:
            row = conn.execute(_auth_requests.select().where(_auth_requests.c.state == state)).fetchone()
        return _row_to_auth_request(row) if row is not None else None

    def get_auth_request_by_code(self, code_hash: str) -> AuthorizationRequest | None:
        with self.engine.connect() as conn:
            row = conn.execute(_auth_requests.select().where(_auth_requests.c.code_hash == code_hash)).fetchone()
        return _row_to_auth_request(row) if row is not None else None

    def consume_auth_request(self, request_id: str, when: datetime) -> bool:
        """Claim a pending request for its callback. False if already consumed (CAS)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _auth_requests.update()
                .where((_auth_requests.c.id == request_id) & (_auth_requests.c.consumed_at.is_(None)))
                .values(consumed_at=_iso(when))
            )
            conn.commit()
        return result.rowcount > 0

    def bind_auth_request_principal(self, request_id: str, principal_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_auth_requests.update().where(_auth_requests.c.id == request_id).values(user_id=principal_id))
            conn.commit()

    def attach_authorization_code(self, request_id: str, code_hash: str, code_expires_at: datetime) -> bool:
        """Store the code HMAC once. False if a code was already minted (CAS)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _auth_requests.update()
                .where((_auth_requests.c.id == request_id) & (_auth_requests.c.code_hash.is_(None)))
                .values(code_hash=code_hash, code_expires_at=_iso(code_expires_at))
            )
            conn.commit()
        return result.rowcount > 0

    def consume_authorization_code(self, request_id: str, when: datetime) -> bool:
        """Redeem a code. False if it was already redeemed (CAS)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _auth_requests.update()
                .where((_auth_requests.c.id == request_id) & (_auth_requests.c.code_consumed_at.is_(None)))
                .values(code_consumed_at=_iso(when))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_auth_request(self, request_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_auth_requests.delete().where(_auth_requests.c.id == request_id))
            conn.commit()
        return result.rowcount > 0

    def delete_expired_auth_requests(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_auth_requests.delete().where(_auth_requests.c.expires_at < _iso(now)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # OAuth clients
    # ------------------------------------------------------------------

    def insert_client(self, client: ClientApplication) -> ClientApplication:
        client.id = client.id or _new_id()
        client.created_at = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _oauth_clients.insert().values(
                    id=client.id,
                    client_id=client.client_id,
                    secret_hash=client.secret_hash,
                    name=client.name,
                    redirect_uris=json.dumps(client.redirect_uris),
                    scopes=json.dumps([s.value for s in client.scopes]),
                    owner_id=client.owner_id,
                    is_active=1 if client.is_active else 0,
                    created_at=client.created_at,
                )
            )
            conn.commit()
        return client

    def get_client(self, client_id: str) -> ClientApplication | None:
        with self.engine.connect() as conn:
            row = conn.execute(_oauth_clients.select().where(_oauth_clients.c.client_id == client_id)).fetchone()
        return _row_to_client(row) if row is not None else None

    def set_client_active(self, client_id: str, is_active: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _oauth_clients.update()
                .where(_oauth_clients.c.client_id == client_id)
                .values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Rate-limit counters
    # ------------------------------------------------------------------

    def get_rate_limit(self, subject: str, endpoint: str) -> RateLimitEntry | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _rate_limits.select().where((_rate_limits.c.subject == subject) & (_rate_limits.c.endpoint == endpoint))
            ).fetchone()
        return _row_to_rate_limit(row) if row is not None else None

    def reset_rate_limit(self, subject: str, endpoint: str, now: datetime, window_reset_at: datetime) -> None:
        """Start a fresh window with count=1, clearing any expired block.

        Upsert: update the existing row, insert if none; if a concurrent
        request inserted first, the unique key rejects ours and we update.
        """
        values = {
            "attempt_count": 1,
            "first_attempt_at": _iso(now),
            "last_attempt_at": _iso(now),
            "window_reset_at": _iso(window_reset_at),
            "is_blocked": 0,
            "blocked_until": None,
        }
        key = (_rate_limits.c.subject == subject) & (_rate_limits.c.endpoint == endpoint)
        with self.engine.connect() as conn:
            result = conn.execute(_rate_limits.update().where(key).values(**values))
            if result.rowcount == 0:
                try:
                    conn.execute(_rate_limits.insert().values(id=_new_id(), subject=subject, endpoint=endpoint, **values))
                except IntegrityError:
                    conn.rollback()
                    conn.execute(_rate_limits.update().where(key).values(**values))
            conn.commit()

    def increment_rate_limit(self, subject: str, endpoint: str, now: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _rate_limits.update()
                .where((_rate_limits.c.subject == subject) & (_rate_limits.c.endpoint == endpoint))
                .values(attempt_count=_rate_limits.c.attempt_count + 1, last_attempt_at=_iso(now))
            )
            conn.commit()

    def block_rate_limit(self, subject: str, endpoint: str, now: datetime, blocked_until: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _rate_limits.update()
                .where((_rate_limits.c.subject == subject) & (_rate_limits.c.endpoint == endpoint))
                .values(
                    attempt_count=_rate_limits.c.attempt_count + 1,
                    last_attempt_at=_iso(now),
                    is_blocked=1,
                    blocked_until=_iso(blocked_until),
                )
            )
            conn.commit()

    def delete_expired_rate_limits(self, now: datetime) -> int:
        """Drop entries whose window has passed and which are not currently blocked."""
        cutoff = _iso(now)
        with self.engine.connect() as conn:
            result = conn.execute(
                _rate_limits.delete().where(
                    (_rate_limits.c.window_reset_at < cutoff)
                    & ((_rate_limits.c.blocked_until.is_(None)) | (_rate_limits.c.blocked_until < cutoff))
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.system_role.desc(), _roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    def get_role(self, role_id: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def insert_role(self, name: str, description: str = "", system_role: bool = False) -> Role:
        """Raises IntegrityError if the role name is taken."""
        role = Role(id=f"role-{uuid.uuid4().hex[:12]}", name=name, description=description, system_role=system_role)
        role.created_at = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _roles.insert().values(
                    id=role.id,
                    name=name,
                    description=description,
                    system_role=1 if system_role else 0,
                    created_at=role.created_at,
                )
            )
            conn.commit()
        return role

    def update_role(self, role_id: str, **fields) -> bool:
        """Update name / description."""
        with self.engine.connect() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_role(self, role_id: str) -> bool:
        """Delete a role together with its grants and assignments."""
        with self.engine.connect() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            conn.execute(_user_roles.delete().where(_user_roles.c.role_id == role_id))
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
            conn.commit()
        return result.rowcount > 0

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.resource, _permissions.c.action)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def get_permission(self, name: PermissionName) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.name == name.value)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def insert_permission(self, name: PermissionName, display_name: str = "", description: str = "") -> Permission:
        """Add a catalogue entry. Raises IntegrityError if it already exists."""
        permission = Permission(
            id=_permission_id(name), name=name, display_name=display_name, description=description
        )
        with self.engine.connect() as conn:
            conn.execute(
                _permissions.insert().values(
                    id=permission.id,
                    name=name.value,
                    display_name=display_name,
                    description=description,
                    resource=name.resource.value,
                    action=name.action.value,
                )
            )
            conn.commit()
        return permission

    def get_role_permissions(self, role_id: str) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _permissions.select()
                .join(_role_permissions, _role_permissions.c.permission_id == _permissions.c.id)
                .where(_role_permissions.c.role_id == role_id)
                .order_by(_permissions.c.name)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def replace_role_permissions(self, role_id: str, names: list[PermissionName]) -> None:
        """Replace a role's grants in one transaction. Unknown catalogue names are skipped."""
        with self.engine.connect() as conn:
            ids = list(
                conn.execute(
                    select(_permissions.c.id).where(_permissions.c.name.in_([n.value for n in names]))
                ).scalars()
            )
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            for permission_id in ids:
                conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=permission_id))
            conn.commit()

    def get_principal_roles(self, principal_id: str) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _roles.select()
                .join(_user_roles, _user_roles.c.role_id == _roles.c.id)
                .where(_user_roles.c.user_id == principal_id)
                .order_by(_roles.c.name)
            ).fetchall()
        return [_row_to_role(r) for r in rows]

    def principal_has_role(self, principal_id: str, role_id: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_user_roles.c.id).where((_user_roles.c.user_id == principal_id) & (_user_roles.c.role_id == role_id))
            ).fetchone()
        return row is not None

    def get_principal_permissions(self, principal_id: str) -> list[Permission]:
        """Distinct permissions reachable through every role the principal holds."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _permissions.select()
                .distinct()
                .join(_role_permissions, _role_permissions.c.permission_id == _permissions.c.id)
                .join(_user_roles, _user_roles.c.role_id == _role_permissions.c.role_id)
                .where(_user_roles.c.user_id == principal_id)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def principal_has_permission(self, principal_id: str, name: PermissionName) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_permissions.c.id)
                .join(_role_permissions, _role_permissions.c.permission_id == _permissions.c.id)
                .join(_user_roles, _user_roles.c.role_id == _role_permissions.c.role_id)
                .where((_user_roles.c.user_id == principal_id) & (_permissions.c.name == name.value))
                .limit(1)
            ).fetchone()
        return row is not None

    def principal_has_resource_action(self, principal_id: str, resource: str, action: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_permissions.c.id)
                .join(_role_permissions, _role_permissions.c.permission_id == _permissions.c.id)
                .join(_user_roles, _user_roles.c.role_id == _role_permissions.c.role_id)
                .where(
                    (_user_roles.c.user_id == principal_id)
                    & (_permissions.c.resource == resource)
                    & (_permissions.c.action == action)
                )
                .limit(1)
            ).fetchone()
        return row is not None

    def assign_role(self, principal_id: str, role_id: str, assigned_by: str | None = None) -> RoleAssignment:
        """Grant a role. Assigning a role the principal already holds is a no-op."""
        assignment = RoleAssignment(
            id=_new_id(), principal_id=principal_id, role_id=role_id, assigned_by=assigned_by, assigned_at=_now_iso()
        )
        with self.engine.connect() as conn:
            try:
                conn.execute(
                    _user_roles.insert().values(
                        id=assignment.id,
                        user_id=principal_id,
                        role_id=role_id,
                        assigned_by=assigned_by,
                        assigned_at=assignment.assigned_at,
                    )
                )
                conn.commit()
            except IntegrityError:
                conn.rollback()
                row = conn.execute(
                    _user_roles.select().where((_user_roles.c.user_id == principal_id) & (_user_roles.c.role_id == role_id))
                ).fetchone()
                return _row_to_assignment(row)
        return assignment

    def remove_role(self, principal_id: str, role_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.delete().where((_user_roles.c.user_id == principal_id) & (_user_roles.c.role_id == role_id))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def insert_api_key(self, api_key: ApiKey) -> ApiKey:
        api_key.id = api_key.id or _new_id()
        api_key.created_at = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _api_keys.insert().values(
                    id=api_key.id,
                    user_id=api_key.principal_id,
                    name=api_key.name,
                    description=api_key.description,
                    key_hash=api_key.key_hash,
                    key_prefix=api_key.key_prefix,
                    scopes=json.dumps(sorted(s.value for s in api_key.scopes)),
                    rate_limit_requests=api_key.rate_limit_requests,
                    rate_limit_window=api_key.rate_limit_window,
                    expires_at=_iso(api_key.expires_at),
                    created_by_ip=api_key.created_by_ip,
                    created_at=api_key.created_at,
                )
            )
            conn.commit()
        return api_key

    def get_api_key(self, key_id: str) -> ApiKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Look up a key (revoked or not) by its HMAC. O(1) via the UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.key_hash == key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_api_keys(self, principal_id: str, include_revoked: bool = False) -> list[ApiKey]:
        query = _api_keys.select().where(_api_keys.c.user_id == principal_id)
        if not include_revoked:
            query = query.where(_api_keys.c.revoked_at.is_(None))
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_api_keys.c.created_at.desc())).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def update_api_key(self, key_id: str, principal_id: str, **fields) -> bool:
        """Update name, description, scopes or budget. Ownership-checked like revoke."""
        if "scopes" in fields:
            fields["scopes"] = json.dumps(sorted(s.value for s in fields["scopes"]))
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.update()
                .where(
                    (_api_keys.c.id == key_id)
                    & (_api_keys.c.user_id == principal_id)
                    & (_api_keys.c.revoked_at.is_(None))
                )
                .values(**fields)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_api_key(self, key_id: str, principal_id: str) -> bool:
        """Revoke a key. principal_id is matched to prevent IDOR."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.update()
                .where(
                    (_api_keys.c.id == key_id)
                    & (_api_keys.c.user_id == principal_id)
                    & (_api_keys.c.revoked_at.is_(None))
                )
                .values(revoked_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def touch_api_key(self, key_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used_at=_now_iso()))
            conn.commit()

    def insert_api_key_usage(self, usage: ApiKeyUsage) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _api_key_usage.insert().values(
                    id=_new_id(),
                    api_key_id=usage.api_key_id,
                    endpoint=usage.endpoint,
                    method=usage.method,
                    status_code=usage.status_code,
                    response_time_ms=usage.response_time_ms,
                    ip_address=usage.ip_address,
                    user_agent=usage.user_agent,
                    created_at=_now_iso(),
                )
            )
            conn.commit()

    def api_key_usage_stats(self, key_id: str, since: datetime) -> dict:
        """Aggregate usage rows newer than `since`."""
        window = (_api_key_usage.c.api_key_id == key_id) & (_api_key_usage.c.created_at >= _iso(since))
        with self.engine.connect() as conn:
            total, avg_ms = conn.execute(
                select(func.count(), func.avg(_api_key_usage.c.response_time_ms)).where(window)
            ).one()
            by_endpoint = conn.execute(
                select(_api_key_usage.c.endpoint, func.count()).where(window).group_by(_api_key_usage.c.endpoint)
            ).all()
            by_status = conn.execute(
                select(_api_key_usage.c.status_code, func.count()).where(window).group_by(_api_key_usage.c.status_code)
            ).all()
        return {
            "total_requests": total or 0,
            "average_response_ms": round(float(avg_ms), 1) if avg_ms is not None else 0.0,
            "by_endpoint": {endpoint: count for endpoint, count in by_endpoint},
            "by_status": {str(status): count for status, count in by_status},
        }

    # ------------------------------------------------------------------
    # Audit trail (append-only)
    # ------------------------------------------------------------------

    def insert_audit_event(self, audit: AuditEvent) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _audit_logs.insert().values(
                    id=_new_id(),
                    event_type=audit.event_type,
                    status=audit.status,
                    user_id=audit.principal_id,
                    provider=audit.provider,
                    ip_address=audit.ip_address,
                    user_agent=audit.user_agent,
                    error_message=audit.error_message,
                    created_at=_now_iso(),
                )
            )
            conn.commit()

    def list_audit_events(
        self, limit: int = 100, principal_id: str | None = None, event_type: str | None = None
    ) -> list[AuditEvent]:
        query = _audit_logs.select()
        if principal_id is not None:
            query = query.where(_audit_logs.c.user_id == principal_id)
        if event_type is not None:
            query = query.where(_audit_logs.c.event_type == event_type)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_audit_logs.c.created_at.desc()).limit(limit)).fetchall()
        return [_row_to_audit(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _permission_id(name: PermissionName) -> str:
    return "perm-" + name.value.replace(":", "-").replace("_", "-")


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        principal_id=row.user_id,
        provider=Provider(row.provider),
        provider_user_id=row.provider_user_id,
        created_at=row.created_at,
    )


def _row_to_principal(row, identity_rows) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
        identities=[_row_to_identity(r) for r in identity_rows],
    )


def _row_to_credential(row) -> CredentialRecord:
    return CredentialRecord(
        id=row.id,
        principal_id=row.user_id,
        token_hash=row.token_hash,
        client_id=row.client_id,
        expires_at=_parse(row.expires_at),
        revoked_at=_parse(row.revoked_at),
        created_at=row.created_at,
    )


def _row_to_auth_request(row) -> AuthorizationRequest:
    return AuthorizationRequest(
        id=row.id,
        state=row.state,
        nonce=row.nonce,
        pkce_verifier=row.pkce_verifier,
        provider=Provider(row.provider) if row.provider else None,
        client_id=row.client_id,
        redirect_uri=row.redirect_uri,
        scopes=[OAuthScope(s) for s in json.loads(row.scopes)],
        client_state=row.client_state,
        code_challenge=row.code_challenge,
        code_challenge_method=row.code_challenge_method,
        principal_id=row.user_id,
        consumed_at=_parse(row.consumed_at),
        code_hash=row.code_hash,
        code_expires_at=_parse(row.code_expires_at),
        code_consumed_at=_parse(row.code_consumed_at),
        expires_at=_parse(row.expires_at),
        created_at=row.created_at,
    )


def _row_to_client(row) -> ClientApplication:
    return ClientApplication(
        id=row.id,
        client_id=row.client_id,
        secret_hash=row.secret_hash,
        name=row.name,
        redirect_uris=json.loads(row.redirect_uris),
        scopes=[OAuthScope(s) for s in json.loads(row.scopes)],
        owner_id=row.owner_id,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_rate_limit(row) -> RateLimitEntry:
    return RateLimitEntry(
        id=row.id,
        subject=row.subject,
        endpoint=row.endpoint,
        attempt_count=row.attempt_count,
        window_reset_at=_parse(row.window_reset_at),
        blocked=bool(row.is_blocked),
        blocked_until=_parse(row.blocked_until),
        first_attempt_at=_parse(row.first_attempt_at),
        last_attempt_at=_parse(row.last_attempt_at),
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description,
        system_role=bool(row.system_role),
        created_at=row.created_at,
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        name=PermissionName(row.name),
        display_name=row.display_name,
        description=row.description,
    )


def _row_to_assignment(row) -> RoleAssignment:
    return RoleAssignment(
        id=row.id,
        principal_id=row.user_id,
        role_id=row.role_id,
        assigned_by=row.assigned_by,
        assigned_at=row.assigned_at,
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        principal_id=row.user_id,
        name=row.name,
        description=row.description,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        scopes=frozenset(ApiKeyScope(s) for s in json.loads(row.scopes)),
        rate_limit_requests=row.rate_limit_requests,
        rate_limit_window=row.rate_limit_window,
        expires_at=_parse(row.expires_at),
        revoked_at=_parse(row.revoked_at),
        last_used_at=row.last_used_at,
        created_by_ip=row.created_by_ip,
        created_at=row.created_at,
    )


def _row_to_audit(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        event_type=row.event_type,
        status=row.status,
        principal_id=row.user_id,
        provider=row.provider,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        error_message=row.error_message,
        created_at=row.created_at,
    )
