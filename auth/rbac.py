"""
auth/rbac.py -- Role-based permission resolution and role administration.

Permissions are reachable only through role membership. The super-admin
role is special-cased: holding it short-circuits every check BEFORE any
permission query runs. That is different from "has every permission":
permissions added to the catalogue later apply to super admins with no
change to role_permissions.

Empty requirement lists: has_all([]) is vacuously True, has_any([]) is False.
These rules are applied before the super-admin short-circuit so the answer
for an empty list never depends on who is asking.

System roles cannot be created, renamed, deleted, or have their grants
changed except through the bootstrap path (bootstrap=True), which is used
by the store seeding and the operator CLI.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.capabilities import Action, PermissionName, Resource, SystemRole
from auth.errors import ConflictError, NotFoundError, SystemRoleError

if TYPE_CHECKING:
    from auth.models import Permission, Role, RoleAssignment
    from auth.store import CredentialStore

logger = logging.getLogger("elixpo.rbac")


class PermissionResolver:
    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_super_admin(self, principal_id: str) -> bool:
        return self._store.principal_has_role(principal_id, SystemRole.SUPER_ADMIN.value)

    def is_admin(self, principal_id: str) -> bool:
        return self.is_super_admin(principal_id) or self._store.principal_has_role(
            principal_id, SystemRole.ADMIN.value
        )

    def roles_for(self, principal_id: str) -> list[Role]:
        return self._store.get_principal_roles(principal_id)

    def effective_permissions(self, principal_id: str) -> frozenset[Permission]:
        """Union of permissions over every assigned role (whole catalogue for super admins)."""
        if self.is_super_admin(principal_id):
            return frozenset(self._store.list_permissions())
        return frozenset(self._store.get_principal_permissions(principal_id))

    def has_permission(self, principal_id: str, name: PermissionName) -> bool:
        if self.is_super_admin(principal_id):
            return True
        return self._store.principal_has_permission(principal_id, name)

    def has_resource_action(self, principal_id: str, resource: Resource, action: Action) -> bool:
        if self.is_super_admin(principal_id):
            return True
        return self._store.principal_has_resource_action(principal_id, resource.value, action.value)

    def has_any(self, principal_id: str, names: Iterable[PermissionName]) -> bool:
        required = set(names)
        if not required:
            return False
        if self.is_super_admin(principal_id):
            return True
        held = {p.name for p in self._store.get_principal_permissions(principal_id)}
        return bool(required & held)

    def has_all(self, principal_id: str, names: Iterable[PermissionName]) -> bool:
        required = set(names)
        if not required:
            return True
        if self.is_super_admin(principal_id):
            return True
        held = {p.name for p in self._store.get_principal_permissions(principal_id)}
        return required <= held

    # ------------------------------------------------------------------
    # Role administration
    # ------------------------------------------------------------------

    def _mutable_role(self, role_id: str, bootstrap: bool) -> Role:
        role = self._store.get_role(role_id)
        if role is None:
            raise NotFoundError(f"Role {role_id!r} does not exist.")
        if role.system_role and not bootstrap:
            raise SystemRoleError(f"System role {role.name!r} cannot be modified.")
        return role

    def create_role(
        self,
        name: str,
        description: str = "",
        permissions: Iterable[PermissionName] = (),
        *,
        system_role: bool = False,
        bootstrap: bool = False,
    ) -> Role:
        if system_role and not bootstrap:
            raise SystemRoleError("System roles can only be created during bootstrap.")
        try:
            role = self._store.insert_role(name, description, system_role=system_role)
        except IntegrityError as exc:
            raise ConflictError(f"A role named {name!r} already exists.") from exc
        granted = list(permissions)
        if granted:
            self._store.replace_role_permissions(role.id, granted)
        logger.info("role created: %s (%s)", role.name, role.id)
        return role

    def update_role(
        self, role_id: str, *, name: str | None = None, description: str | None = None, bootstrap: bool = False
    ) -> Role:
        self._mutable_role(role_id, bootstrap)
        fields = {k: v for k, v in (("name", name), ("description", description)) if v is not None}
        if fields:
            try:
                self._store.update_role(role_id, **fields)
            except IntegrityError as exc:
                raise ConflictError(f"A role named {name!r} already exists.") from exc
        return self._store.get_role(role_id)

    def delete_role(self, role_id: str, *, bootstrap: bool = False) -> None:
        role = self._mutable_role(role_id, bootstrap)
        if role.system_role:
            # Even bootstrap cannot remove a built-in role; it would be re-seeded anyway.
            raise SystemRoleError(f"System role {role.name!r} cannot be deleted.")
        self._store.delete_role(role_id)
        logger.info("role deleted: %s (%s)", role.name, role_id)

    def update_role_permissions(
        self, role_id: str, names: Iterable[PermissionName], *, bootstrap: bool = False
    ) -> list[Permission]:
        self._mutable_role(role_id, bootstrap)
        self._store.replace_role_permissions(role_id, list(names))
        return self._store.get_role_permissions(role_id)

    def assign_role(self, principal_id: str, role_id: str, assigned_by: str | None = None) -> RoleAssignment:
        if self._store.get_role(role_id) is None:
            raise NotFoundError(f"Role {role_id!r} does not exist.")
        if self._store.get_principal(principal_id) is None:
            raise NotFoundError(f"Principal {principal_id!r} does not exist.")
        return self._store.assign_role(principal_id, role_id, assigned_by)

    def remove_role(self, principal_id: str, role_id: str) -> bool:
        return self._store.remove_role(principal_id, role_id)
