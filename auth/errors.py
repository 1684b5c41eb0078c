"""
auth/errors.py -- Domain exception hierarchy for the security core.

Every error carries an OAuth-style machine code (RFC 6749 section 5.2 where
one exists) and the HTTP status the API layer should use. Services raise
these; api/main.py renders them into the shared ErrorResponse envelope, so
route handlers never translate them by hand.

Verification failures are NOT exceptions: TokenService.verify() and
ApiKeyAuthority.validate_key() return None and the caller treats that as
unauthenticated. These classes describe outcomes a client can act on.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. Subclasses pin code and status_code."""

    code = "server_error"
    status_code = 500

    def __init__(self, message: str, *, headers: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.headers = headers or {}

    def extra(self) -> dict:
        """Additional envelope fields for this error (empty by default)."""
        return {}


class InvalidRequestError(AuthError):
    code = "invalid_request"
    status_code = 400


class InvalidClientError(AuthError):
    code = "invalid_client"
    status_code = 401


class UnauthorizedClientError(AuthError):
    code = "unauthorized_client"
    status_code = 400


class InvalidGrantError(AuthError):
    code = "invalid_grant"
    status_code = 400


class InvalidStateError(AuthError):
    code = "invalid_state"
    status_code = 400


class InvalidCredentialsError(AuthError):
    code = "invalid_credentials"
    status_code = 401


class AccessDeniedError(AuthError):
    code = "access_denied"
    status_code = 403


class UnsupportedGrantTypeError(AuthError):
    code = "unsupported_grant_type"
    status_code = 400


class UnsupportedResponseTypeError(AuthError):
    code = "unsupported_response_type"
    status_code = 400


class NotFoundError(AuthError):
    code = "not_found"
    status_code = 404


class ConflictError(AuthError):
    code = "conflict"
    status_code = 409


class SystemRoleError(AuthError):
    """Mutation of a built-in role outside the bootstrap path."""

    code = "system_role_immutable"
    status_code = 403


class ServerError(AuthError):
    """A downstream dependency (store, identity provider) failed."""


class RateLimitedError(AuthError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str, retry_after: int, *, headers: dict[str, str] | None = None) -> None:
        merged = dict(headers or {})
        merged["Retry-After"] = str(retry_after)
        super().__init__(message, headers=merged)
        self.retry_after = retry_after

    def extra(self) -> dict:
        return {"retry_after": self.retry_after}


class ProviderLockInError(AuthError):
    """The email is already registered through a different identity provider.

    Linking a second provider by email match would let anyone who controls an
    account at that provider take over the existing principal.
    """

    code = "provider_lock_in"
    status_code = 403

    def __init__(self, registered_providers: list[str]) -> None:
        names = ", ".join(registered_providers) or "another method"
        super().__init__(f"This account is registered with {names}. Sign in with that method instead.")
        self.registered_providers = registered_providers

    def extra(self) -> dict:
        return {"registered_providers": self.registered_providers}
