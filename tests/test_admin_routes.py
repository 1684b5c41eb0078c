"""
tests/test_admin_routes.py -- RBAC administration over HTTP.

Three actors share one app instance:
  admin -- role-admin (no roles:manage, no users:delete)
  root  -- role-super-admin (bypasses every check)
  user  -- role-user
"""

from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient

from auth.capabilities import SystemRole
from auth.store import CredentialStore
from core.config import Settings
from tests.conftest import bearer, create_principal, running_app


@dataclass
class AdminHarness:
    client: TestClient
    store: CredentialStore
    settings: Settings
    admin: dict[str, str]
    root: dict[str, str]
    user: dict[str, str]
    admin_id: str
    user_id: str


@pytest.fixture(scope="module")
def harness() -> Generator[AdminHarness, None, None]:
    with running_app("admin_routes") as (client, store, settings, _provider):
        admin = create_principal(store, "admin@x.com", roles=(SystemRole.ADMIN,))
        root = create_principal(store, "root@x.com", roles=(SystemRole.SUPER_ADMIN,))
        user = create_principal(store, "user@x.com")
        yield AdminHarness(
            client=client,
            store=store,
            settings=settings,
            admin=bearer(settings, store, admin),
            root=bearer(settings, store, root),
            user=bearer(settings, store, user),
            admin_id=admin.id,
            user_id=user.id,
        )


def test_permission_denied_is_audited(harness: AdminHarness) -> None:
    resp = harness.client.get("/api/v1/admin/roles", headers=harness.user)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"

    audit = harness.client.get(
        "/api/v1/admin/audit", params={"event_type": "permission_denied"}, headers=harness.admin
    )
    assert audit.status_code == 200
    events = audit.json()
    assert events and events[0]["principal_id"] == harness.user_id
    assert "roles:read" in events[0]["error_message"]


class TestRoles:
    def test_list_includes_system_roles(self, harness: AdminHarness) -> None:
        resp = harness.client.get("/api/v1/admin/roles", headers=harness.admin)
        assert resp.status_code == 200
        roles = {r["id"]: r for r in resp.json()}
        assert {role.value for role in SystemRole} <= set(roles)
        assert roles["role-user"]["system_role"] is True
        assert roles["role-user"]["permissions"] == ["apps:read", "webhooks:read"]

    def test_custom_role_lifecycle(self, harness: AdminHarness) -> None:
        resp = harness.client.post(
            "/api/v1/admin/roles",
            json={"name": "Support", "description": "Helpdesk", "permissions": ["users:read"]},
            headers=harness.admin,
        )
        assert resp.status_code == 201, resp.text
        role = resp.json()
        assert role["system_role"] is False
        assert role["permissions"] == ["users:read"]

        resp = harness.client.patch(f"/api/v1/admin/roles/{role['id']}", json={"name": "Support Desk"}, headers=harness.admin)
        assert resp.status_code == 200
        assert resp.json()["name"] == "Support Desk"

        # Deleting needs roles:manage, which role-admin lacks.
        resp = harness.client.delete(f"/api/v1/admin/roles/{role['id']}", headers=harness.admin)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

        resp = harness.client.delete(f"/api/v1/admin/roles/{role['id']}", headers=harness.root)
        assert resp.status_code == 204
        assert harness.client.get(f"/api/v1/admin/roles/{role['id']}", headers=harness.admin).status_code == 404

    def test_duplicate_name(self, harness: AdminHarness) -> None:
        harness.client.post("/api/v1/admin/roles", json={"name": "Auditors"}, headers=harness.admin)
        resp = harness.client.post("/api/v1/admin/roles", json={"name": "Auditors"}, headers=harness.admin)
        assert resp.status_code == 409

    def test_system_roles_are_immutable(self, harness: AdminHarness) -> None:
        resp = harness.client.patch("/api/v1/admin/roles/role-user", json={"name": "Everyone"}, headers=harness.admin)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "system_role_immutable"

        resp = harness.client.delete("/api/v1/admin/roles/role-moderator", headers=harness.root)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "system_role_immutable"

        resp = harness.client.put(
            "/api/v1/admin/roles/role-user/permissions", json={"permissions": ["apps:read"]}, headers=harness.root
        )
        assert resp.status_code == 403

    def test_invalid_permission_name(self, harness: AdminHarness) -> None:
        resp = harness.client.post(
            "/api/v1/admin/roles", json={"name": "Broken", "permissions": ["everything:all"]}, headers=harness.admin
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestPermissionCatalogue:
    def test_grant_requires_catalogue_entry(self, harness: AdminHarness) -> None:
        role = harness.client.post("/api/v1/admin/roles", json={"name": "Ops"}, headers=harness.admin).json()
        resp = harness.client.put(
            f"/api/v1/admin/roles/{role['id']}/permissions",
            json={"permissions": ["admin:delete"]},
            headers=harness.root,
        )
        assert resp.status_code == 400
        assert "admin:delete" in resp.json()["error"]["message"]

        resp = harness.client.post(
            "/api/v1/admin/permissions", json={"name": "admin:delete", "display_name": "Delete Admin"}, headers=harness.root
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["resource"] == "admin"
        assert resp.json()["action"] == "delete"
        again = harness.client.post("/api/v1/admin/permissions", json={"name": "admin:delete"}, headers=harness.root)
        assert again.status_code == 409

        resp = harness.client.put(
            f"/api/v1/admin/roles/{role['id']}/permissions",
            json={"permissions": ["admin:delete", "admin:read"]},
            headers=harness.root,
        )
        assert resp.status_code == 200
        assert resp.json()["permissions"] == ["admin:delete", "admin:read"]

    def test_list(self, harness: AdminHarness) -> None:
        resp = harness.client.get("/api/v1/admin/permissions", headers=harness.admin)
        assert resp.status_code == 200
        assert "users:read" in {p["name"] for p in resp.json()}


class TestPrincipals:
    def test_list_users(self, harness: AdminHarness) -> None:
        resp = harness.client.get("/api/v1/admin/users", headers=harness.admin)
        assert resp.status_code == 200
        assert {"admin@x.com", "root@x.com", "user@x.com"} <= {u["email"] for u in resp.json()}

    def test_assign_and_remove_role(self, harness: AdminHarness) -> None:
        target = create_principal(harness.store, "mod@x.com")
        resp = harness.client.post(
            f"/api/v1/admin/users/{target.id}/roles", json={"role_id": "role-moderator"}, headers=harness.admin
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["assigned_by"] == harness.admin_id

        resp = harness.client.get(f"/api/v1/admin/users/{target.id}/permissions", headers=harness.admin)
        assert resp.status_code == 200
        body = resp.json()
        assert body["super_admin"] is False
        assert sorted(body["roles"]) == ["role-moderator", "role-user"]
        assert body["permissions"] == ["apps:read", "apps:write", "users:read", "users:write", "webhooks:read"]

        url = f"/api/v1/admin/users/{target.id}/roles/role-moderator"
        assert harness.client.delete(url, headers=harness.admin).status_code == 204
        assert harness.client.delete(url, headers=harness.admin).status_code == 404

    def test_unknown_role_or_principal(self, harness: AdminHarness) -> None:
        resp = harness.client.post(
            f"/api/v1/admin/users/{harness.user_id}/roles", json={"role_id": "role-nope"}, headers=harness.admin
        )
        assert resp.status_code == 404
        resp = harness.client.get("/api/v1/admin/users/missing/permissions", headers=harness.admin)
        assert resp.status_code == 404

    def test_only_super_admin_grants_super_admin(self, harness: AdminHarness) -> None:
        target = create_principal(harness.store, "heir@x.com")
        url = f"/api/v1/admin/users/{target.id}/roles"
        resp = harness.client.post(url, json={"role_id": "role-super-admin"}, headers=harness.admin)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "access_denied"

        resp = harness.client.post(url, json={"role_id": "role-super-admin"}, headers=harness.root)
        assert resp.status_code == 201
        perms = harness.client.get(f"/api/v1/admin/users/{target.id}/permissions", headers=harness.admin).json()
        assert perms["super_admin"] is True

        resp = harness.client.delete(f"{url}/role-super-admin", headers=harness.admin)
        assert resp.status_code == 403

    def test_cannot_deactivate_self(self, harness: AdminHarness) -> None:
        resp = harness.client.patch(
            f"/api/v1/admin/users/{harness.admin_id}", json={"is_active": False}, headers=harness.admin
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"

    def test_deactivation_ends_access(self, harness: AdminHarness) -> None:
        target = create_principal(harness.store, "leaver@x.com")
        headers = bearer(harness.settings, harness.store, target)
        assert harness.client.get("/api/v1/auth/me", headers=headers).status_code == 200

        resp = harness.client.patch(f"/api/v1/admin/users/{target.id}", json={"is_active": False}, headers=harness.admin)
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert harness.client.get("/api/v1/auth/me", headers=headers).status_code == 401
        assert harness.store.list_audit_events(principal_id=harness.admin_id, event_type="principal_updated")
