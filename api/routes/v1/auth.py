"""
api/routes/v1/auth.py -- Password accounts and session endpoints.

Routes:
  POST /api/v1/auth/register   -- create a password account; returns a token pair
  POST /api/v1/auth/login      -- password login; sets session cookies
  POST /api/v1/auth/refresh    -- rotate a refresh token (body or cookie)
  POST /api/v1/auth/logout     -- revoke the refresh token; clear cookies
  GET  /api/v1/auth/me         -- current principal, roles and permissions
  POST /api/v1/auth/password   -- change password; revokes every session
  GET  /api/v1/auth/providers  -- sign-in methods the login page should offer

Security:
  [H2] register/login/refresh/password are guarded by the persistent
       sliding-window limiter (auth/rate_limit.py), keyed by client IP
       (password change: by principal). Tripping the limit escalates to a
       block, and the 429 carries Retry-After.
  [C1] Password checks go through the flow manager, which uses
       authenticate_principal() and its timing equalization.
  [H4] A password login for an email registered only through an OAuth
       provider is refused with provider_lock_in, not bad credentials.
  [M5] Cache-Control: no-store on every response that carries tokens.
  [M8] Registration requires a Cloudflare Turnstile token (auth/captcha.py).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import PUBLIC_LIMIT, limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    PasswordChangeRequest,
    PrincipalInfo,
    ProviderInfo,
    RefreshRequest,
    RegisterRequest,
    TokenPairResponse,
)
from auth.audit import FAILURE, SUCCESS, record_event
from auth.captcha import verify_turnstile
from auth.capabilities import Provider
from auth.dependencies import (
    client_ip,
    enforce_rate_limit,
    get_app_settings,
    get_current_principal,
    get_flow_manager,
    get_resolver,
    get_store,
    get_token_service,
)
from auth.errors import AuthError, InvalidGrantError, InvalidRequestError, ProviderLockInError
from auth.models import Principal, TokenPair
from auth.rate_limit import LOGIN, PASSWORD_RESET, REGISTER, TOKEN
from auth.tokens import ACCESS, clear_auth_cookies, set_auth_cookies

# Auth policy:
# - POST /auth/register, /auth/login, /auth/refresh, /auth/logout: public
# - GET  /auth/providers: public -- the login page renders buttons from it
# - GET  /auth/me, POST /auth/password: requires auth (get_current_principal)
router = APIRouter()


def token_body(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        scope=pair.scope,
    )


def _session_response(request: Request, principal: Principal, pair: TokenPair, status_code: int = 200) -> JSONResponse:
    """LoginResponse with session cookies and no-store [M5]."""
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            user=PrincipalInfo(
                id=principal.id,
                email=principal.email,
                provider=Provider.EMAIL.value,
                display_name=principal.display_name,
            ),
            tokens=token_body(pair),
        ).model_dump(),
    )
    set_auth_cookies(resp, pair, principal.id, get_app_settings(request))
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", status_code=201, response_model=LoginResponse)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a password account and sign it in.

    400 if the Turnstile captcha does not verify; 409 if the email is
    already registered, whatever the provider.
    """
    enforce_rate_limit(request, REGISTER)
    if not verify_turnstile(get_app_settings(request), body.turnstile_token, client_ip(request)):
        raise InvalidRequestError("Captcha verification failed.")
    flow = get_flow_manager(request)
    principal = flow.register_with_password(body.email, body.password, body.display_name)
    record_event(
        get_store(request),
        "register",
        SUCCESS,
        principal_id=principal.id,
        provider=Provider.EMAIL.value,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    pair = get_token_service(request).issue_token_pair(principal.id, principal.email, Provider.EMAIL.value)
    return _session_response(request, principal, pair, status_code=201)


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return tokens and set cookies.

    Wrong email and wrong password produce the same invalid_credentials
    error so the endpoint does not reveal which accounts exist.
    """
    enforce_rate_limit(request, LOGIN)
    store = get_store(request)
    ip = client_ip(request)
    agent = request.headers.get("User-Agent")
    try:
        principal = get_flow_manager(request).login_with_password(body.email, body.password)
    except ProviderLockInError as exc:
        record_event(store, "provider_lock_in", FAILURE, ip_address=ip, user_agent=agent, error_message=exc.message)
        raise
    except AuthError as exc:
        record_event(store, "login_failure", FAILURE, ip_address=ip, user_agent=agent, error_message=exc.code)
        raise

    record_event(
        store, "login_success", SUCCESS, principal_id=principal.id, provider=Provider.EMAIL.value, ip_address=ip, user_agent=agent
    )
    pair = get_token_service(request).issue_token_pair(principal.id, principal.email, Provider.EMAIL.value)
    return _session_response(request, principal, pair)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Rotate the presented refresh token. The old token stops working immediately.

    Reads the token from the JSON body, falling back to the refresh_token
    cookie for the web front end.
    """
    enforce_rate_limit(request, TOKEN)
    raw = (body.refresh_token if body else None) or request.cookies.get("refresh_token")
    if not raw:
        raise InvalidRequestError("refresh_token is required.")
    settings = get_app_settings(request)
    tokens = get_token_service(request)
    try:
        pair = tokens.refresh(raw, client_id=settings.first_party_client_id)
    except InvalidGrantError as exc:
        record_event(
            get_store(request),
            "token_refresh",
            FAILURE,
            ip_address=client_ip(request),
            user_agent=request.headers.get("User-Agent"),
            error_message=exc.message,
        )
        raise

    claims = tokens.verify(pair.access_token, expected_type=ACCESS)
    record_event(get_store(request), "token_refresh", SUCCESS, principal_id=claims.subject_id, ip_address=client_ip(request))
    resp = JSONResponse(content=token_body(pair).model_dump())
    set_auth_cookies(resp, pair, claims.subject_id, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
def logout(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Revoke the refresh token and clear the session cookies. Idempotent."""
    raw = (body.refresh_token if body else None) or request.cookies.get("refresh_token")
    revoked = get_token_service(request).logout(raw or "")
    if revoked:
        record_event(get_store(request), "logout", SUCCESS, ip_address=client_ip(request))
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookies(resp)
    return resp


@limiter.limit(PUBLIC_LIMIT)
@router.get("/auth/providers", response_model=list[ProviderInfo])
def list_providers(request: Request) -> list[ProviderInfo]:
    """Return the enabled sign-in methods.

    Email/password is always available; Google and GitHub appear only when
    their client credentials are configured.
    """
    enabled = [ProviderInfo(name=Provider.EMAIL.value, label="Email")]
    for provider, config in get_flow_manager(request).providers.items():
        enabled.append(ProviderInfo(name=provider.value, label=config.label))
    return enabled


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> MeResponse:
    resolver = get_resolver(request)
    return MeResponse(
        id=principal.id,
        email=principal.email,
        display_name=principal.display_name,
        avatar_url=principal.avatar_url,
        providers=principal.providers,
        roles=[r.id for r in resolver.roles_for(principal.id)],
        permissions=sorted(p.name.value for p in resolver.effective_permissions(principal.id)),
        created_at=principal.created_at,
        last_login=principal.last_login,
    )


@router.post("/auth/password")
def change_password(
    request: Request, body: PasswordChangeRequest, principal: Principal = Depends(get_current_principal)
) -> JSONResponse:
    """Change the password and sign out every session, including this one."""
    enforce_rate_limit(request, PASSWORD_RESET, subject=f"principal:{principal.id}")
    revoked = get_flow_manager(request).change_password(principal, body.current_password, body.new_password)
    record_event(get_store(request), "password_changed", SUCCESS, principal_id=principal.id, ip_address=client_ip(request))
    resp = JSONResponse(content={"message": "Password changed.", "revoked_sessions": revoked})
    clear_auth_cookies(resp)
    resp.headers["Cache-Control"] = "no-store"
    return resp
