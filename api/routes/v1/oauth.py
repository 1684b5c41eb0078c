"""
api/routes/v1/oauth.py -- Authorization-code flow, token endpoint, client registry.

Routes:
  GET  /api/v1/auth/authorize              -- start a handshake (provider redirect or consent prompt)
  POST /api/v1/auth/authorize              -- record the signed-in user's consent decision
  GET  /api/v1/auth/consent                -- consent prompt for a pending state
  GET  /api/v1/auth/callback/{provider}    -- provider redirect target
  POST /api/v1/auth/callback/{provider}    -- same, for response_mode=form_post
  POST /api/v1/auth/token                  -- authorization_code / refresh_token grants
  POST /api/v1/auth/oauth-clients          -- register a third-party client (apps:write)
  GET  /api/v1/auth/oauth-clients/{id}     -- public client info for consent screens

Flow for a registered client:
  1. Client sends the user to GET /authorize?client_id&redirect_uri&scope&state[&provider].
     With a provider the user is sent on to Google/GitHub; without one the
     user must already be signed in and gets a consent prompt.
  2. After a provider login the callback signs the user in here and sends
     them to GET /consent?state=...
  3. POST /authorize {state, approved} returns the client redirect carrying
     either code=... or error=access_denied.
  4. The client calls POST /token with grant_type=authorization_code, its
     secret, the same redirect_uri and its PKCE verifier if it sent one.

The first-party web client skips consent: the callback sets session cookies
and redirects straight back to its (trusted-host) redirect_uri.

Every error here is an AuthError rendered by api/main.py with its OAuth code.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import PUBLIC_LIMIT, limiter
from api.models import (
    ClientInfoResponse,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    ConsentPrompt,
    ConsentRequest,
    RedirectResponseBody,
    TokenPairResponse,
    TokenRequest,
)
from api.routes.v1.auth import token_body
from auth.audit import FAILURE, SUCCESS, record_event
from auth.capabilities import OAuthScope, PermissionName, Provider
from auth.dependencies import (
    client_ip,
    enforce_rate_limit,
    get_app_settings,
    get_current_principal,
    get_flow_manager,
    get_store,
    get_token_service,
    require_permission,
    try_get_current_principal,
)
from auth.errors import (
    AccessDeniedError,
    AuthError,
    InvalidRequestError,
    NotFoundError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from auth.flow import append_query
from auth.models import ClientApplication, Principal
from auth.rate_limit import TOKEN
from auth.tokens import set_auth_cookies

logger = logging.getLogger("elixpo.api.oauth")

# Auth policy:
# - GET  /auth/authorize: public with provider; requires a session without one
# - POST /auth/authorize, GET /auth/consent: requires auth (get_current_principal)
# - GET|POST /auth/callback/{provider}: public -- the state parameter is the credential
# - POST /auth/token: client credentials in the body
# - POST /auth/oauth-clients: requires apps:write
# - GET  /auth/oauth-clients/{id}: public, throttled by slowapi
router = APIRouter()


def _parse_scopes(scope: str | None) -> list[OAuthScope] | None:
    if not scope:
        return None
    try:
        return [OAuthScope(s) for s in scope.split()]
    except ValueError as exc:
        raise InvalidRequestError(f"Unknown scope in {scope!r}.") from exc


def _client_info(client: ClientApplication) -> ClientInfoResponse:
    return ClientInfoResponse(
        client_id=client.client_id,
        name=client.name,
        redirect_uris=client.redirect_uris,
        scopes=client.scopes,
        is_active=client.is_active,
        created_at=client.created_at,
    )


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


@router.get("/auth/authorize", response_model=ConsentPrompt)
def authorize(
    request: Request,
    client_id: str,
    redirect_uri: str,
    response_type: str = "code",
    provider: Provider | None = None,
    scope: str | None = None,
    state: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
):
    """Begin an authorization request.

    With ?provider= the browser is redirected (302) to the identity provider.
    Without it, a signed-in user receives the consent prompt for a
    registered client.
    """
    if response_type != "code":
        raise UnsupportedResponseTypeError("Only response_type=code is supported.")
    scopes = _parse_scopes(scope)
    flow = get_flow_manager(request)

    if provider is not None:
        start = flow.begin_authorization(
            provider,
            client_id,
            redirect_uri,
            scopes,
            client_state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )
        return RedirectResponse(start.auth_url, status_code=302)

    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "login_required", "message": "Sign in first, or pass a provider to sign in with."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    auth_request, client = flow.begin_consent(
        principal,
        client_id,
        redirect_uri,
        scopes,
        client_state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
    )
    return ConsentPrompt(
        state=auth_request.state,
        client_id=client.client_id,
        client_name=client.name,
        redirect_uri=auth_request.redirect_uri,
        scopes=auth_request.scopes,
    )


@router.get("/auth/consent", response_model=ConsentPrompt)
def consent_prompt(request: Request, state: str, principal: Principal = Depends(get_current_principal)) -> ConsentPrompt:
    """Describe the pending request behind `state` so the front end can ask the user."""
    auth_request, client = get_flow_manager(request).pending_consent(state, principal)
    return ConsentPrompt(
        state=auth_request.state,
        client_id=client.client_id,
        client_name=client.name,
        redirect_uri=auth_request.redirect_uri,
        scopes=auth_request.scopes,
    )


@router.post("/auth/authorize", response_model=RedirectResponseBody)
def decide_consent(
    request: Request, body: ConsentRequest, principal: Principal = Depends(get_current_principal)
) -> RedirectResponseBody:
    """Approve or deny a pending request. Returns where to send the browser next."""
    flow = get_flow_manager(request)
    if body.approved:
        target = flow.grant_consent(body.state, principal)
        event = "consent_granted"
    else:
        target = flow.deny_authorization(body.state, principal)
        event = "consent_denied"
    record_event(get_store(request), event, SUCCESS, principal_id=principal.id, ip_address=client_ip(request))
    return RedirectResponseBody(redirect_to=target)


async def _finish_provider_login(
    request: Request, provider: Provider, code: str | None, state: str | None, error: str | None
) -> RedirectResponse:
    """Complete the handshake and send the browser on.

    The principal is signed in to this IdP either way (session cookies).
    First-party requests go straight back to their redirect_uri; requests
    from a registered client continue at the consent step.

    A provider `error` sends the browser back to the client with
    error=access_denied when the state is live. Without a live state there
    is no trusted redirect, so the error is returned as JSON.
    """
    store = get_store(request)
    ip = client_ip(request)
    flow = get_flow_manager(request)
    if error:
        record_event(
            store,
            "login_failure",
            FAILURE,
            provider=provider.value,
            ip_address=ip,
            user_agent=request.headers.get("User-Agent"),
            error_message=f"provider returned {error}",
        )
        target = flow.cancel_authorization(provider, state or "")
        if target is None:
            raise AccessDeniedError(f"The identity provider returned an error: {error}")
        resp = RedirectResponse(target, status_code=302)
        resp.headers["Cache-Control"] = "no-store"
        return resp
    try:
        outcome = await flow.complete_authorization(provider, code or "", state or "")
    except AuthError as exc:
        record_event(
            store,
            "provider_lock_in" if exc.code == "provider_lock_in" else "login_failure",
            FAILURE,
            provider=provider.value,
            ip_address=ip,
            user_agent=request.headers.get("User-Agent"),
            error_message=exc.message,
        )
        raise

    record_event(
        store,
        "oauth_login",
        SUCCESS,
        principal_id=outcome.principal.id,
        provider=provider.value,
        ip_address=ip,
        user_agent=request.headers.get("User-Agent"),
    )
    settings = get_app_settings(request)
    if outcome.consent_required:
        target = f"{settings.app_url.rstrip('/')}/api/v1/auth/consent?" + urlencode({"state": outcome.request.state})
    else:
        target = append_query(outcome.request.redirect_uri, {"state": outcome.request.client_state})
    resp = RedirectResponse(target, status_code=302)
    set_auth_cookies(resp, outcome.tokens, outcome.principal.id, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/callback/{provider}")
async def callback(
    request: Request,
    provider: Provider,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> RedirectResponse:
    return await _finish_provider_login(request, provider, code, state, error)


@router.post("/auth/callback/{provider}")
async def callback_form_post(
    request: Request,
    provider: Provider,
    code: str | None = Form(None),
    state: str | None = Form(None),
    error: str | None = Form(None),
) -> RedirectResponse:
    """response_mode=form_post variant: parameters arrive urlencoded in the body."""
    return await _finish_provider_login(request, provider, code, state, error)


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------


@router.post("/auth/token", response_model=TokenPairResponse)
def token(request: Request, body: TokenRequest) -> JSONResponse:
    """Exchange an authorization code or a refresh token for a token pair.

    client_credentials is recognised but not offered (501): machine callers
    use API keys instead.
    """
    enforce_rate_limit(request, TOKEN)
    flow = get_flow_manager(request)
    store = get_store(request)

    if body.grant_type == "authorization_code":
        pair = flow.exchange_code(
            body.code or "",
            body.client_id or "",
            body.client_secret or "",
            body.redirect_uri or "",
            body.code_verifier,
        )
        event = "token_exchange"
    elif body.grant_type == "refresh_token":
        if not body.refresh_token:
            raise InvalidRequestError("refresh_token is required.")
        settings = get_app_settings(request)
        client_id = body.client_id or settings.first_party_client_id
        if client_id != settings.first_party_client_id:
            flow.authenticate_client(client_id, body.client_secret or "")
        pair = get_token_service(request).refresh(body.refresh_token, client_id=client_id)
        event = "token_refresh"
    elif body.grant_type == "client_credentials":
        raise HTTPException(
            status_code=501,
            detail={"code": "unsupported_grant_type", "message": "client_credentials is not supported; use an API key."},
        )
    else:
        raise UnsupportedGrantTypeError(f"Unsupported grant_type: {body.grant_type!r}.")

    record_event(store, event, SUCCESS, ip_address=client_ip(request))
    resp = JSONResponse(content=token_body(pair).model_dump(exclude_none=True))
    resp.headers["Cache-Control"] = "no-store"
    resp.headers["Pragma"] = "no-cache"
    return resp


# ---------------------------------------------------------------------------
# Client registry
# ---------------------------------------------------------------------------


@router.post("/auth/oauth-clients", status_code=201, response_model=ClientRegistrationResponse)
def register_client(
    request: Request,
    body: ClientRegistrationRequest,
    principal: Principal = Depends(require_permission(PermissionName.APPS_WRITE)),
) -> JSONResponse:
    """Register a third-party client. The secret appears in this response only."""
    client, secret = get_flow_manager(request).register_client(
        body.name, body.redirect_uris, body.scopes, owner_id=principal.id
    )
    logger.info("client %s registered by %s", client.client_id, principal.id)
    info = _client_info(client)
    resp = JSONResponse(
        status_code=201,
        content=ClientRegistrationResponse(**info.model_dump(), client_secret=secret).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(PUBLIC_LIMIT)
@router.get("/auth/oauth-clients/{client_id}", response_model=ClientInfoResponse)
def get_client(request: Request, client_id: str) -> ClientInfoResponse:
    client = get_store(request).get_client(client_id)
    if client is None:
        raise NotFoundError("Client not found.")
    return _client_info(client)
