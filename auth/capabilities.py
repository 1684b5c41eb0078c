"""
auth/capabilities.py -- Closed vocabularies for every capability domain.

Permission names, API key scopes, OAuth scopes, identity providers and the
built-in system roles are all str-valued Enums. The wire vocabulary is the
enum value (e.g. "users:read"), so JSON payloads and database rows keep plain
strings while Python code can only name members that exist. An unknown string
fails at the boundary: Enum("...") raises ValueError and Pydantic turns that
into a 422.

Layer rule: no imports from api/ or core/. Pure data, no I/O.
"""

from __future__ import annotations

from enum import Enum


class Provider(str, Enum):
    """Where a principal's identity was established."""

    EMAIL = "email"
    GOOGLE = "google"
    GITHUB = "github"


class Resource(str, Enum):
    USERS = "users"
    APPS = "apps"
    ADMIN = "admin"
    SETTINGS = "settings"
    WEBHOOKS = "webhooks"
    API_KEYS = "api_keys"
    ROLES = "roles"


class Action(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    MANAGE = "manage"


class PermissionName(str, Enum):
    """Every permission the RBAC engine can reason about, as resource:action.

    The enum enumerates the full resource x action grid. Only part of it is
    seeded into the permissions table at bootstrap (see SEEDED_PERMISSIONS);
    the rest can be created later by an operator and immediately applies to
    the super-admin role without touching role_permissions.
    """

    USERS_READ = "users:read"
    USERS_WRITE = "users:write"
    USERS_DELETE = "users:delete"
    USERS_MANAGE = "users:manage"
    APPS_READ = "apps:read"
    APPS_WRITE = "apps:write"
    APPS_DELETE = "apps:delete"
    APPS_MANAGE = "apps:manage"
    ADMIN_READ = "admin:read"
    ADMIN_WRITE = "admin:write"
    ADMIN_DELETE = "admin:delete"
    ADMIN_MANAGE = "admin:manage"
    SETTINGS_READ = "settings:read"
    SETTINGS_WRITE = "settings:write"
    SETTINGS_DELETE = "settings:delete"
    SETTINGS_MANAGE = "settings:manage"
    WEBHOOKS_READ = "webhooks:read"
    WEBHOOKS_WRITE = "webhooks:write"
    WEBHOOKS_DELETE = "webhooks:delete"
    WEBHOOKS_MANAGE = "webhooks:manage"
    API_KEYS_READ = "api_keys:read"
    API_KEYS_WRITE = "api_keys:write"
    API_KEYS_DELETE = "api_keys:delete"
    API_KEYS_MANAGE = "api_keys:manage"
    ROLES_READ = "roles:read"
    ROLES_WRITE = "roles:write"
    ROLES_DELETE = "roles:delete"
    ROLES_MANAGE = "roles:manage"

    @property
    def resource(self) -> Resource:
        return Resource(self.value.split(":", 1)[0])

    @property
    def action(self) -> Action:
        return Action(self.value.split(":", 1)[1])

    @classmethod
    def of(cls, resource: Resource, action: Action) -> PermissionName:
        return cls(f"{resource.value}:{action.value}")


class ApiKeyScope(str, Enum):
    AUTH_READ = "auth:read"
    AUTH_WRITE = "auth:write"
    USERS_READ = "users:read"
    USERS_WRITE = "users:write"
    APPS_READ = "apps:read"
    APPS_WRITE = "apps:write"
    ANALYTICS_READ = "analytics:read"
    WEBHOOKS_READ = "webhooks:read"
    WEBHOOKS_WRITE = "webhooks:write"
    ADMIN_READ = "admin:read"
    ADMIN_WRITE = "admin:write"


class OAuthScope(str, Enum):
    """Scopes a registered third-party client may request."""

    OPENID = "openid"
    PROFILE = "profile"
    EMAIL = "email"
    PHONE = "phone"
    ADDRESS = "address"


class SystemRole(str, Enum):
    """Built-in roles. Always present, never deletable, immutable outside bootstrap."""

    SUPER_ADMIN = "role-super-admin"
    ADMIN = "role-admin"
    MODERATOR = "role-moderator"
    USER = "role-user"


# ---------------------------------------------------------------------------
# Bootstrap catalogue
# ---------------------------------------------------------------------------

# Seeded permission set with display names. Missing grid cells (e.g.
# admin:delete) are deliberately absent from a fresh install.
SEEDED_PERMISSIONS: dict[PermissionName, tuple[str, str]] = {
    PermissionName.USERS_READ: ("Read Users", "View user information"),
    PermissionName.USERS_WRITE: ("Write Users", "Create and update users"),
    PermissionName.USERS_DELETE: ("Delete Users", "Delete user accounts"),
    PermissionName.USERS_MANAGE: ("Manage Users", "Full user management"),
    PermissionName.APPS_READ: ("Read Apps", "View OAuth applications"),
    PermissionName.APPS_WRITE: ("Write Apps", "Create and update OAuth apps"),
    PermissionName.APPS_DELETE: ("Delete Apps", "Delete OAuth applications"),
    PermissionName.APPS_MANAGE: ("Manage Apps", "Full OAuth application management"),
    PermissionName.ADMIN_READ: ("Read Admin Panel", "Access admin dashboard"),
    PermissionName.ADMIN_WRITE: ("Write Admin", "Modify admin settings"),
    PermissionName.ADMIN_MANAGE: ("Manage Admin", "Full admin management"),
    PermissionName.SETTINGS_READ: ("Read Settings", "View system settings"),
    PermissionName.SETTINGS_WRITE: ("Write Settings", "Modify system settings"),
    PermissionName.WEBHOOKS_READ: ("Read Webhooks", "View webhooks"),
    PermissionName.WEBHOOKS_WRITE: ("Write Webhooks", "Create and update webhooks"),
    PermissionName.WEBHOOKS_DELETE: ("Delete Webhooks", "Delete webhooks"),
    PermissionName.API_KEYS_READ: ("Read API Keys", "View API keys"),
    PermissionName.API_KEYS_WRITE: ("Write API Keys", "Create and update API keys"),
    PermissionName.API_KEYS_DELETE: ("Delete API Keys", "Delete API keys"),
    PermissionName.ROLES_READ: ("Read Roles", "View roles and permissions"),
    PermissionName.ROLES_WRITE: ("Write Roles", "Create and update roles"),
    PermissionName.ROLES_MANAGE: ("Manage Roles", "Full roles management"),
}

SYSTEM_ROLE_INFO: dict[SystemRole, tuple[str, str]] = {
    SystemRole.SUPER_ADMIN: ("Super Admin", "Full system access"),
    SystemRole.ADMIN: ("Admin", "Administrative access to most features"),
    SystemRole.MODERATOR: ("Moderator", "Moderate users and content"),
    SystemRole.USER: ("User", "Standard user role"),
}

_ADMIN_EXCLUDED = {
    PermissionName.USERS_DELETE,
    PermissionName.APPS_DELETE,
    PermissionName.ADMIN_MANAGE,
    PermissionName.ROLES_MANAGE,
}


def seeded_role_permissions(role: SystemRole) -> list[PermissionName]:
    """Return the permissions a system role is granted on a fresh install.

    The super-admin row is kept complete for display purposes only; the
    resolver never consults it (super admins bypass every check).
    """
    seeded = list(SEEDED_PERMISSIONS)
    if role is SystemRole.SUPER_ADMIN:
        return seeded
    if role is SystemRole.ADMIN:
        return [p for p in seeded if p not in _ADMIN_EXCLUDED]
    if role is SystemRole.MODERATOR:
        return [
            p
            for p in seeded
            if p.resource in (Resource.USERS, Resource.APPS) and p.action in (Action.READ, Action.WRITE)
        ]
    return [p for p in seeded if p.action is Action.READ and p.resource in (Resource.APPS, Resource.WEBHOOKS)]
