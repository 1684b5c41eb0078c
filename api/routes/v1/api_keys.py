"""
api/routes/v1/api_keys.py -- Self-service API key management.

Routes:
  GET    /api/v1/api-keys               -- list the caller's keys (?include_revoked=true)
  POST   /api/v1/api-keys               -- create a key; the raw key is returned once
  PATCH  /api/v1/api-keys/{id}          -- rename, rescope or re-budget a live key
  DELETE /api/v1/api-keys/{id}          -- revoke
  GET    /api/v1/api-keys/{id}/usage    -- request counts for the last N hours

Every route requires a signed-in principal and acts only on that principal's
keys: a key id belonging to someone else is a 404, never a 403, so ids do
not leak (IDOR guard, enforced again in the store).

[H3] Creation is capped per principal (MAX_API_KEYS_PER_PRINCIPAL).
Admin scopes can only be put on a key by a principal who holds the matching
admin permission, so a key is never a way around RBAC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from api.models import ApiKeyCreate, ApiKeyCreatedResponse, ApiKeyPatch, ApiKeyResponse, ApiKeyUsageResponse
from auth.audit import SUCCESS, record_event
from auth.capabilities import ApiKeyScope, PermissionName
from auth.dependencies import client_ip, get_api_key_authority, get_current_principal, get_resolver, get_store
from auth.errors import AccessDeniedError
from auth.models import ApiKey, Principal

router = APIRouter()

_ADMIN_SCOPE_PERMISSIONS = {
    ApiKeyScope.ADMIN_READ: PermissionName.ADMIN_READ,
    ApiKeyScope.ADMIN_WRITE: PermissionName.ADMIN_WRITE,
}


def _to_response(key: ApiKey) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=key.id,
        name=key.name,
        description=key.description,
        key_prefix=key.key_prefix,
        scopes=sorted(key.scopes, key=lambda s: s.value),
        rate_limit_requests=key.rate_limit_requests,
        rate_limit_window=key.rate_limit_window,
        created_at=key.created_at,
        last_used_at=key.last_used_at,
        expires_at=key.expires_at.isoformat() if key.expires_at else None,
        revoked=key.revoked,
    )


def _check_admin_scopes(request: Request, principal: Principal, scopes: list[ApiKeyScope]) -> None:
    required = {_ADMIN_SCOPE_PERMISSIONS[s] for s in scopes if s in _ADMIN_SCOPE_PERMISSIONS}
    if required and not get_resolver(request).has_all(principal.id, required):
        raise AccessDeniedError("Admin scopes require the matching admin permission.")


@router.get("/api-keys", response_model=list[ApiKeyResponse])
def list_api_keys(
    request: Request,
    include_revoked: bool = False,
    principal: Principal = Depends(get_current_principal),
) -> list[ApiKeyResponse]:
    keys = get_api_key_authority(request).list_keys(principal.id, include_revoked=include_revoked)
    return [_to_response(k) for k in keys]


@router.post("/api-keys", status_code=201, response_model=ApiKeyCreatedResponse)
def create_api_key(
    request: Request, body: ApiKeyCreate, principal: Principal = Depends(get_current_principal)
) -> JSONResponse:
    """Create a key. Store the returned key now: only its HMAC is kept."""
    _check_admin_scopes(request, principal, body.scopes)
    expires_at = (
        datetime.now(timezone.utc) + timedelta(days=body.expires_in_days) if body.expires_in_days else None
    )
    raw_key, key = get_api_key_authority(request).generate_key(
        principal.id,
        body.name,
        body.scopes,
        expires_at=expires_at,
        description=body.description,
        rate_limit_requests=body.rate_limit_requests,
        rate_limit_window=body.rate_limit_window,
        created_by_ip=client_ip(request),
    )
    record_event(get_store(request), "api_key_created", SUCCESS, principal_id=principal.id, ip_address=client_ip(request))
    resp = JSONResponse(
        status_code=201,
        content=ApiKeyCreatedResponse(**_to_response(key).model_dump(), key=raw_key).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.patch("/api-keys/{key_id}", response_model=ApiKeyResponse)
def update_api_key(
    request: Request, key_id: str, body: ApiKeyPatch, principal: Principal = Depends(get_current_principal)
) -> ApiKeyResponse:
    fields = body.model_dump(exclude_none=True)
    if body.scopes is not None:
        _check_admin_scopes(request, principal, body.scopes)
        fields["scopes"] = body.scopes
    key = get_api_key_authority(request).update_key(key_id, principal.id, **fields)
    return _to_response(key)


@router.delete("/api-keys/{key_id}", status_code=204)
def revoke_api_key(request: Request, key_id: str, principal: Principal = Depends(get_current_principal)) -> Response:
    get_api_key_authority(request).revoke_key(key_id, principal.id)
    record_event(get_store(request), "api_key_revoked", SUCCESS, principal_id=principal.id, ip_address=client_ip(request))
    return Response(status_code=204)


@router.get("/api-keys/{key_id}/usage", response_model=ApiKeyUsageResponse)
def api_key_usage(
    request: Request,
    key_id: str,
    hours: int = Query(default=24, ge=1, le=720),
    principal: Principal = Depends(get_current_principal),
) -> ApiKeyUsageResponse:
    stats = get_api_key_authority(request).usage_stats(key_id, principal.id, hours=hours)
    return ApiKeyUsageResponse(key_id=key_id, hours=hours, **stats)
