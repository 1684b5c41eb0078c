"""
api/routes/v1/admin.py -- RBAC administration and audit trail.

Routes (all require a signed-in principal plus the listed permission):
  GET    /admin/roles                          roles:read
  POST   /admin/roles                          roles:write
  GET    /admin/roles/{id}                     roles:read
  PATCH  /admin/roles/{id}                     roles:write
  DELETE /admin/roles/{id}                     roles:manage
  PUT    /admin/roles/{id}/permissions         roles:manage
  GET    /admin/permissions                    roles:read
  POST   /admin/permissions                    roles:manage
  GET    /admin/users                          users:read
  PATCH  /admin/users/{id}                     users:manage
  GET    /admin/users/{id}/permissions         users:read
  POST   /admin/users/{id}/roles               users:manage
  DELETE /admin/users/{id}/roles/{role_id}     users:manage
  GET    /admin/audit                          admin:read

System roles are immutable here: PermissionResolver raises SystemRoleError
(403 system_role_immutable) for any rename, delete or grant change.
Only a super admin can hand out the super-admin role.
[M4] An administrator cannot deactivate their own account.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    AuditEventResponse,
    PermissionCreate,
    PermissionResponse,
    PrincipalPatch,
    PrincipalPermissionsResponse,
    PrincipalResponse,
    RoleAssignmentRequest,
    RoleAssignmentResponse,
    RoleCreate,
    RolePatch,
    RolePermissionsUpdate,
    RoleResponse,
)
from auth.audit import SUCCESS, record_event
from auth.capabilities import PermissionName, SystemRole
from auth.dependencies import client_ip, get_resolver, get_store, require_permission
from auth.errors import AccessDeniedError, ConflictError, InvalidRequestError, NotFoundError
from auth.models import Permission, Principal, Role

router = APIRouter(prefix="/admin")


def _permission_response(perm: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=perm.id,
        name=perm.name,
        resource=perm.resource,
        action=perm.action,
        display_name=perm.display_name,
        description=perm.description,
    )


def _role_response(request: Request, role: Role) -> RoleResponse:
    grants = get_store(request).get_role_permissions(role.id)
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        system_role=role.system_role,
        permissions=sorted((p.name for p in grants), key=lambda n: n.value),
    )


def _principal_response(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(
        id=principal.id,
        email=principal.email,
        display_name=principal.display_name,
        is_active=principal.is_active,
        created_at=principal.created_at,
        last_login=principal.last_login,
    )


def _role_changed(request: Request, actor: Principal, message: str) -> None:
    record_event(get_store(request), "role_changed", SUCCESS, principal_id=actor.id, ip_address=client_ip(request), error_message=message)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, _actor: Principal = Depends(require_permission(PermissionName.ROLES_READ))):
    return [_role_response(request, r) for r in get_store(request).list_roles()]


@router.post("/roles", status_code=201, response_model=RoleResponse)
def create_role(
    request: Request, body: RoleCreate, actor: Principal = Depends(require_permission(PermissionName.ROLES_WRITE))
) -> RoleResponse:
    role = get_resolver(request).create_role(body.name, body.description, body.permissions)
    _role_changed(request, actor, f"created {role.id}")
    return _role_response(request, role)


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(
    request: Request, role_id: str, _actor: Principal = Depends(require_permission(PermissionName.ROLES_READ))
) -> RoleResponse:
    role = get_store(request).get_role(role_id)
    if role is None:
        raise NotFoundError(f"Role {role_id!r} does not exist.")
    return _role_response(request, role)


@router.patch("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: str,
    body: RolePatch,
    actor: Principal = Depends(require_permission(PermissionName.ROLES_WRITE)),
) -> RoleResponse:
    role = get_resolver(request).update_role(role_id, name=body.name, description=body.description)
    _role_changed(request, actor, f"updated {role_id}")
    return _role_response(request, role)


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(
    request: Request, role_id: str, actor: Principal = Depends(require_permission(PermissionName.ROLES_MANAGE))
) -> Response:
    get_resolver(request).delete_role(role_id)
    _role_changed(request, actor, f"deleted {role_id}")
    return Response(status_code=204)


@router.put("/roles/{role_id}/permissions", response_model=RoleResponse)
def replace_role_permissions(
    request: Request,
    role_id: str,
    body: RolePermissionsUpdate,
    actor: Principal = Depends(require_permission(PermissionName.ROLES_MANAGE)),
) -> RoleResponse:
    store = get_store(request)
    missing = [n.value for n in body.permissions if store.get_permission(n) is None]
    if missing:
        raise InvalidRequestError("Permissions not in the catalogue: " + ", ".join(missing))
    get_resolver(request).update_role_permissions(role_id, body.permissions)
    _role_changed(request, actor, f"permissions of {role_id} set to {len(body.permissions)} entries")
    return _role_response(request, store.get_role(role_id))


# ---------------------------------------------------------------------------
# Permission catalogue
# ---------------------------------------------------------------------------


@router.get("/permissions", response_model=list[PermissionResponse])
def list_permissions(request: Request, _actor: Principal = Depends(require_permission(PermissionName.ROLES_READ))):
    return [_permission_response(p) for p in get_store(request).list_permissions()]


@router.post("/permissions", status_code=201, response_model=PermissionResponse)
def create_permission(
    request: Request,
    body: PermissionCreate,
    actor: Principal = Depends(require_permission(PermissionName.ROLES_MANAGE)),
) -> PermissionResponse:
    """Add a grid permission that a fresh install does not seed (e.g. admin:delete)."""
    store = get_store(request)
    if store.get_permission(body.name) is not None:
        raise ConflictError(f"Permission {body.name.value!r} already exists.")
    perm = store.insert_permission(body.name, body.display_name, body.description)
    _role_changed(request, actor, f"permission {body.name.value} created")
    return _permission_response(perm)


# ---------------------------------------------------------------------------
# Principals and assignments
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[PrincipalResponse])
def list_users(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _actor: Principal = Depends(require_permission(PermissionName.USERS_READ)),
):
    return [_principal_response(p) for p in get_store(request).list_principals(limit=limit, offset=offset)]


@router.patch("/users/{principal_id}", response_model=PrincipalResponse)
def update_user(
    request: Request,
    principal_id: str,
    body: PrincipalPatch,
    actor: Principal = Depends(require_permission(PermissionName.USERS_MANAGE)),
) -> PrincipalResponse:
    """Activate/deactivate or rename an account. Deactivation revokes its refresh tokens."""
    store = get_store(request)
    if store.get_principal(principal_id) is None:
        raise NotFoundError(f"Principal {principal_id!r} does not exist.")
    if body.is_active is False and principal_id == actor.id:
        raise InvalidRequestError("You cannot deactivate your own account.")  # [M4]
    fields = body.model_dump(exclude_none=True)
    if fields:
        store.update_principal(principal_id, **fields)
    if body.is_active is False:
        store.revoke_all_refresh_tokens(principal_id)
    record_event(store, "principal_updated", SUCCESS, principal_id=actor.id, ip_address=client_ip(request), error_message=principal_id)
    return _principal_response(store.get_principal(principal_id))


@router.get("/users/{principal_id}/permissions", response_model=PrincipalPermissionsResponse)
def principal_permissions(
    request: Request, principal_id: str, _actor: Principal = Depends(require_permission(PermissionName.USERS_READ))
) -> PrincipalPermissionsResponse:
    if get_store(request).get_principal(principal_id) is None:
        raise NotFoundError(f"Principal {principal_id!r} does not exist.")
    resolver = get_resolver(request)
    return PrincipalPermissionsResponse(
        principal_id=principal_id,
        super_admin=resolver.is_super_admin(principal_id),
        roles=[r.id for r in resolver.roles_for(principal_id)],
        permissions=sorted((p.name for p in resolver.effective_permissions(principal_id)), key=lambda n: n.value),
    )


@router.post("/users/{principal_id}/roles", status_code=201, response_model=RoleAssignmentResponse)
def assign_role(
    request: Request,
    principal_id: str,
    body: RoleAssignmentRequest,
    actor: Principal = Depends(require_permission(PermissionName.USERS_MANAGE)),
) -> RoleAssignmentResponse:
    resolver = get_resolver(request)
    if body.role_id == SystemRole.SUPER_ADMIN.value and not resolver.is_super_admin(actor.id):
        raise AccessDeniedError("Only a super admin can grant the super-admin role.")
    assignment = resolver.assign_role(principal_id, body.role_id, assigned_by=actor.id)
    _role_changed(request, actor, f"assigned {body.role_id} to {principal_id}")
    return RoleAssignmentResponse(
        principal_id=assignment.principal_id,
        role_id=assignment.role_id,
        assigned_by=assignment.assigned_by,
        assigned_at=assignment.assigned_at,
    )


@router.delete("/users/{principal_id}/roles/{role_id}", status_code=204)
def remove_role(
    request: Request,
    principal_id: str,
    role_id: str,
    actor: Principal = Depends(require_permission(PermissionName.USERS_MANAGE)),
) -> Response:
    resolver = get_resolver(request)
    if role_id == SystemRole.SUPER_ADMIN.value and not resolver.is_super_admin(actor.id):
        raise AccessDeniedError("Only a super admin can revoke the super-admin role.")
    if not resolver.remove_role(principal_id, role_id):
        raise NotFoundError("Role assignment not found.")
    _role_changed(request, actor, f"removed {role_id} from {principal_id}")
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


@router.get("/audit", response_model=list[AuditEventResponse])
def list_audit(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    principal_id: str | None = None,
    event_type: str | None = None,
    _actor: Principal = Depends(require_permission(PermissionName.ADMIN_READ)),
):
    events = get_store(request).list_audit_events(limit=limit, principal_id=principal_id, event_type=event_type)
    return [
        AuditEventResponse(
            id=e.id,
            event_type=e.event_type,
            status=e.status,
            principal_id=e.principal_id,
            provider=e.provider,
            ip_address=e.ip_address,
            error_message=e.error_message,
            created_at=e.created_at,
        )
        for e in events
    ]
