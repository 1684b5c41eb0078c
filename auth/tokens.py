"""
auth/tokens.py -- JWT issuance, verification, and refresh-token rotation.

Security design decisions:
  Signing: PyJWT. EdDSA over an Ed25519 key pair in production; HS256 over
       SECRET_KEY only in DEBUG mode (see Settings.jwt_algorithm). The
       verifier accepts exactly one algorithm -- the one this deployment
       signs with -- so an attacker cannot downgrade to "none" or to HS256
       keyed with the public key.

  Claims: {sub, email, provider?, type, iat, exp, jti}. "type" is "access" or
       "refresh" and is checked on every verification, so a refresh token can
       never be replayed as an access token. jti makes two tokens minted in
       the same second for the same subject distinct.

  Verification: verify() returns None on any failure (bad signature, expiry,
       wrong algorithm, missing claim, wrong kind). Callers treat None as
       unauthenticated; nothing here raises across the trust boundary.

  Refresh tokens: only HMAC-SHA256(SECRET_KEY, token) is persisted. Rotation
       is single-use: the new record is written BEFORE the old one is revoked,
       so a crash between the two leaves both valid rather than neither.
       Revocation of the old record is a compare-and-swap -- if another
       request rotated the same token first, this one loses and its freshly
       written record is revoked again.

  Failure policy [F1]: a store failure while LOOKING UP a refresh token is
       fail-closed (ServerError). A store failure while PERSISTING a rotation
       or a new issuance is fail-open: the signed tokens are still returned and
       the event is logged as degraded.

Layer rule: no imports from api/. Settings are passed in, never read here.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import jwt
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InvalidClientError, InvalidGrantError, ServerError
from auth.models import TokenClaims, TokenPair

if TYPE_CHECKING:
    from auth.store import CredentialStore
    from core.config import Settings

logger = logging.getLogger("elixpo.tokens")

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ["sub", "type", "iat", "exp"]


def hash_secret(secret_key: str, value: str) -> str:
    """Return HMAC-SHA256(secret_key, value) as hex.

    Shared by refresh tokens, API keys, client secrets and authorization
    codes: all are high-entropy random values, so a keyed fast hash gives
    O(1) lookup and is useless to an attacker holding only the database.
    """
    return hmac.new(secret_key.encode(), value.encode(), hashlib.sha256).hexdigest()


class TokenService:
    """Issues, verifies, rotates and revokes bearer tokens."""

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings
        self._algorithm = settings.jwt_algorithm

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self._settings.access_token_expire_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self._settings.refresh_token_expire_days)

    def hash_token(self, token: str) -> str:
        return hash_secret(self._settings.secret_key, token)

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def _encode(self, subject_id: str, email: str, provider: str | None, token_type: str, ttl: timedelta) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": subject_id,
            "email": email,
            "type": token_type,
            "iat": now,
            "exp": now + ttl,
            "jti": secrets.token_hex(16),
        }
        if provider:
            payload["provider"] = provider
        return jwt.encode(payload, self._settings.jwt_signing_key, algorithm=self._algorithm)

    def issue_access_token(self, subject_id: str, email: str, provider: str | None = None) -> str:
        return self._encode(subject_id, email, provider, ACCESS, self.access_ttl)

    def issue_refresh_token(self, subject_id: str, provider: str | None = None) -> str:
        # Refresh tokens carry no email: they are only ever presented back to us.
        return self._encode(subject_id, "", provider, REFRESH, self.refresh_ttl)

    def issue_token_pair(
        self,
        principal_id: str,
        email: str,
        provider: str | None = None,
        client_id: str | None = None,
        scope: str | None = None,
    ) -> TokenPair:
        """Sign an access/refresh pair and persist the refresh-token record.

        Persistence is fail-open [F1]: if the store is down the caller still
        gets its tokens; the refresh token will simply fail its first use.
        """
        access = self.issue_access_token(principal_id, email, provider)
        refresh = self.issue_refresh_token(principal_id, provider)
        try:
            self._store.insert_refresh_token(
                principal_id,
                self.hash_token(refresh),
                datetime.now(timezone.utc) + self.refresh_ttl,
                client_id=client_id,
            )
        except SQLAlchemyError:
            logger.error("degraded: could not persist refresh token for principal %s", principal_id, exc_info=True)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=int(self.access_ttl.total_seconds()),
            scope=scope,
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, expected_type: str | None = None) -> TokenClaims | None:
        """Decode and check a token. Returns claims or None; never raises."""
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self._settings.jwt_verifying_key,
                algorithms=[self._algorithm],
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.PyJWTError:
            return None
        token_type = payload.get("type")
        if token_type not in (ACCESS, REFRESH):
            return None
        if expected_type is not None and token_type != expected_type:
            return None
        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            return None
        return TokenClaims(
            subject_id=payload["sub"],
            email=payload.get("email", ""),
            token_type=token_type,
            issued_at=datetime.fromtimestamp(payload["iat"], timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc),
            provider=payload.get("provider"),
            token_id=payload.get("jti"),
        )

    # ------------------------------------------------------------------
    # Rotate / revoke
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, client_id: str | None = None) -> TokenPair:
        """Exchange a refresh token for a new pair, invalidating the old one.

        client_id, when given, must match the client the token was issued to;
        tokens issued without a client belong to the first-party client.

        Raises:
            InvalidGrantError: bad signature, wrong kind, unknown, expired, or
                already revoked (a reused token is treated as stolen).
            InvalidClientError: the token belongs to another client.
            ServerError: the credential store could not be read [F1].
        """
        claims = self.verify(refresh_token, expected_type=REFRESH)
        if claims is None:
            raise InvalidGrantError("Refresh token is invalid or expired.")

        try:
            record = self._store.get_refresh_token(self.hash_token(refresh_token))
            principal = self._store.get_principal(claims.subject_id)
        except SQLAlchemyError as exc:
            logger.error("credential store unavailable during refresh", exc_info=True)
            raise ServerError("Could not verify the refresh token.") from exc

        now = datetime.now(timezone.utc)
        if record is None or record.revoked or record.expires_at <= now:
            if record is not None and record.revoked:
                logger.warning("revoked refresh token presented for principal %s", record.principal_id)
            raise InvalidGrantError("Refresh token is invalid, expired, or revoked.")
        if client_id is not None and client_id != (record.client_id or self._settings.first_party_client_id):
            raise InvalidClientError("Refresh token was not issued to this client.")
        if principal is None or not principal.is_active or principal.id != record.principal_id:
            raise InvalidGrantError("Refresh token subject is no longer active.")

        access = self.issue_access_token(principal.id, principal.email, claims.provider)
        new_refresh = self.issue_refresh_token(principal.id, claims.provider)
        try:
            new_record = self._store.insert_refresh_token(
                principal.id, self.hash_token(new_refresh), now + self.refresh_ttl, client_id=record.client_id
            )
            if not self._store.revoke_refresh_token(record.id, now):
                # Another request rotated this token between our read and now.
                self._store.revoke_refresh_token(new_record.id, now)
                raise InvalidGrantError("Refresh token is invalid, expired, or revoked.")
        except SQLAlchemyError:
            logger.error("degraded: refresh rotation for principal %s not persisted", principal.id, exc_info=True)

        return TokenPair(
            access_token=access,
            refresh_token=new_refresh,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def logout(self, refresh_token: str) -> bool:
        """Revoke the record behind a refresh token. Idempotent.

        Returns True if a live record was revoked, False if the token was
        unknown, malformed, or already revoked.
        """
        if not refresh_token:
            return False
        record = self._store.get_refresh_token(self.hash_token(refresh_token))
        if record is None or record.revoked:
            return False
        return self._store.revoke_refresh_token(record.id)

    def revoke_all(self, principal_id: str) -> int:
        return self._store.revoke_all_refresh_tokens(principal_id)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, pair: TokenPair, principal_id: str, settings: Settings) -> None:
    """Write the token pair as httpOnly cookies.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches each token's lifetime so cookie and token expire together.
    """
    refresh_age = settings.refresh_token_expire_days * 86400
    response.set_cookie(
        "access_token",
        value=pair.access_token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=pair.expires_in,
    )
    response.set_cookie(
        "refresh_token",
        value=pair.refresh_token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=refresh_age,
    )
    # Readable by the front end; identifies the session owner, grants nothing.
    response.set_cookie("user_id", value=principal_id, samesite="lax", secure=settings.secure_cookies, max_age=refresh_age)


def clear_auth_cookies(response) -> None:
    for name in ("access_token", "refresh_token", "user_id"):
        response.delete_cookie(name)
