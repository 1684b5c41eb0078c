"""
api/routes/v1/machine.py -- Endpoints for machine callers holding an API key.

Routes:
  GET /api/v1/machine/whoami              -- any valid key
  GET /api/v1/machine/principals/{id}     -- key scope users:read

Authentication is require_api_key(): Authorization: Bearer <raw key>. Each
response carries the key's X-RateLimit-* headers and one usage row is
written per call by the middleware in api/main.py.

A key's scope says what kind of call it may make; the data it may reach
is still bounded by its owner. Reading another principal needs the owner to
hold users:read through RBAC.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import PrincipalResponse, WhoAmIResponse
from auth.capabilities import ApiKeyScope, PermissionName
from auth.dependencies import get_resolver, get_store, require_api_key
from auth.errors import NotFoundError
from auth.models import ApiKey

router = APIRouter(prefix="/machine")


@router.get("/whoami", response_model=WhoAmIResponse)
def whoami(key: ApiKey = Depends(require_api_key())) -> WhoAmIResponse:
    return WhoAmIResponse(
        key_id=key.id,
        key_name=key.name,
        principal_id=key.principal_id,
        scopes=sorted(key.scopes, key=lambda s: s.value),
    )


@router.get("/principals/{principal_id}", response_model=PrincipalResponse)
def get_principal(
    request: Request, principal_id: str, key: ApiKey = Depends(require_api_key(ApiKeyScope.USERS_READ))
) -> PrincipalResponse:
    # 404 rather than 403 when the owner may not see the principal, so ids do not leak.
    if principal_id != key.principal_id and not get_resolver(request).has_permission(
        key.principal_id, PermissionName.USERS_READ
    ):
        raise NotFoundError("Principal not found.")
    principal = get_store(request).get_principal(principal_id)
    if principal is None:
        raise NotFoundError("Principal not found.")
    return PrincipalResponse(
        id=principal.id,
        email=principal.email,
        display_name=principal.display_name,
        is_active=principal.is_active,
        created_at=principal.created_at,
        last_login=principal.last_login,
    )
