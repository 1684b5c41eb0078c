"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Per-request context: the credential store and settings live on app.state
(set by the lifespan). Service objects are built per request from them --
there is no process-global store handle.

Principal authentication (JWT access tokens) checks, in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. "access_token" httpOnly cookie -- the web front end.
Only tokens with type=access are accepted; a refresh token presented here is
unauthenticated. The store lookup that follows verification is fail-closed:
if it raises, the request fails.

Machine authentication (API keys) is separate: require_api_key(*scopes)
validates the Bearer key, checks the key's own scopes (never RBAC roles),
applies the key's rate-limit budget, and exposes X-RateLimit-* headers.

Layer rule: may import fastapi (this module is part of the DI system);
no imports from api/.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, Response

from auth.api_keys import ApiKeyAuthority, has_all_scopes
from auth.audit import FAILURE, record_event
from auth.capabilities import ApiKeyScope, PermissionName
from auth.errors import RateLimitedError
from auth.flow import AuthorizationFlowManager
from auth.models import ApiKey, Principal
from auth.rate_limit import RateLimitConfig, RateLimiter, RateLimitResult, rate_limit_headers
from auth.rbac import PermissionResolver
from auth.store import CredentialStore
from auth.tokens import ACCESS, TokenService
from core.config import Settings

# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


def get_store(request: Request) -> CredentialStore:
    return request.app.state.store


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_token_service(request: Request) -> TokenService:
    return TokenService(get_store(request), get_app_settings(request))


def get_flow_manager(request: Request) -> AuthorizationFlowManager:
    return AuthorizationFlowManager(
        get_store(request),
        get_app_settings(request),
        get_token_service(request),
        client_factory=getattr(request.app.state, "oauth_client_factory", None),
    )


def get_resolver(request: Request) -> PermissionResolver:
    return PermissionResolver(get_store(request))


def get_api_key_authority(request: Request) -> ApiKeyAuthority:
    return ApiKeyAuthority(get_store(request), get_app_settings(request))


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        return auth_header[7:].strip() or None
    return None


def enforce_rate_limit(request: Request, config: RateLimitConfig, subject: str | None = None) -> RateLimitResult:
    """Count one attempt against a persistent limiter; raise 429 when rejected.

    subject defaults to the client IP. A rejection is written to the audit
    trail so sustained brute force shows up there, not only in the log.
    """
    subject = subject or client_ip(request)
    result = RateLimiter(get_store(request), config).check(subject)
    if not result.allowed:
        record_event(
            get_store(request),
            "rate_limited",
            FAILURE,
            ip_address=client_ip(request),
            user_agent=request.headers.get("User-Agent"),
            error_message=f"{config.name} limit for {subject}",
        )
        raise RateLimitedError(
            "Too many attempts. Try again later.",
            retry_after=result.retry_after,
            headers=rate_limit_headers(result),
        )
    return result


# ---------------------------------------------------------------------------
# Principals (JWT)
# ---------------------------------------------------------------------------


def try_get_current_principal(request: Request) -> Principal | None:
    """Authenticate the request via Bearer header or cookie. Returns None on failure."""
    token = bearer_token(request) or request.cookies.get("access_token")
    if not token:
        return None
    claims = get_token_service(request).verify(token, expected_type=ACCESS)
    if claims is None:
        return None
    principal = get_store(request).get_principal(claims.subject_id)
    if principal is None or not principal.is_active:
        return None
    return principal


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def require_permission(*names: PermissionName):
    """Dependency factory: the principal must hold every listed permission.

    Super admins pass unconditionally. A denial is written to the audit trail.

        @router.get("/admin/roles", dependencies=[Depends(require_permission(PermissionName.ROLES_READ))])
    """

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        if not get_resolver(request).has_all(principal.id, names):
            record_event(
                get_store(request),
                "permission_denied",
                FAILURE,
                principal_id=principal.id,
                ip_address=client_ip(request),
                user_agent=request.headers.get("User-Agent"),
                error_message=f"{request.method} {request.url.path} requires " + ", ".join(n.value for n in names),
            )
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "You do not have permission to perform this action."},
            )
        return principal

    return dependency


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


def require_api_key(*scopes: ApiKeyScope):
    """Dependency factory for endpoints callable with an API key.

    401 for a missing/unknown/revoked/expired key, 403 when the key lacks a
    scope, 429 (with Retry-After) when the key's budget is spent. Successful
    responses carry X-RateLimit-Limit / -Window / -Remaining. The validated
    key is stored on request.state.api_key so the usage-log middleware can
    record the call after the response is produced.
    """

    def dependency(request: Request, response: Response) -> ApiKey:
        authority = get_api_key_authority(request)
        raw_key = bearer_token(request)
        if not raw_key:
            raise HTTPException(
                status_code=401,
                detail={"code": "unauthorized", "message": "API key required: Authorization: Bearer <key>."},
                headers={"WWW-Authenticate": "Bearer"},
            )
        key = authority.validate_key(raw_key)
        if key is None:
            raise HTTPException(
                status_code=401,
                detail={"code": "invalid_api_key", "message": "API key is invalid, expired, or revoked."},
                headers={"WWW-Authenticate": "Bearer"},
            )
        request.state.api_key = key
        if not has_all_scopes(key, scopes):
            raise HTTPException(
                status_code=403,
                detail={
                    "code": "insufficient_scope",
                    "message": "API key is missing required scopes: " + ", ".join(s.value for s in scopes),
                },
            )
        result = authority.check_rate_limit(key)
        headers = rate_limit_headers(result)
        if not result.allowed:
            raise HTTPException(
                status_code=429,
                detail={
                    "code": "rate_limited",
                    "message": "API key rate limit exceeded.",
                    "retry_after": result.retry_after,
                },
                headers=headers,
            )
        response.headers.update(headers)
        return key

    return dependency
