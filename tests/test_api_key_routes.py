"""
tests/test_api_key_routes.py -- API key management and machine endpoints over HTTP.

Coverage:
  - POST /api-keys returns the raw key once (no-store); listings never do
  - Admin scopes require the matching admin permission
  - /machine/whoami: X-RateLimit headers, per-key budget, 429 with Retry-After
  - Usage rows written by the middleware, including the rejected call
  - /machine/principals: scope check, owner-bounded visibility (404)
  - Missing, garbage, JWT and revoked keys are all 401
  - PATCH / DELETE act only on the caller's own keys
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from auth.capabilities import SystemRole
from auth.models import Principal
from auth.store import CredentialStore
from core.config import Settings
from tests.conftest import bearer, create_principal, running_app

KeyHarness = tuple[TestClient, CredentialStore, Settings]


@pytest.fixture(scope="module")
def harness() -> Generator[KeyHarness, None, None]:
    with running_app("api_key_routes") as (client, store, settings, _provider):
        yield client, store, settings


def create_key(harness: KeyHarness, owner: Principal, **body) -> dict:
    client, store, settings = harness
    payload = {"name": "ci", "scopes": ["auth:read"], **body}
    resp = client.post("/api/v1/api-keys", json=payload, headers=bearer(settings, store, owner))
    assert resp.status_code == 201, resp.text
    return resp.json()


def key_auth(key: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {key['key']}"}


class TestManagement:
    def test_create_and_list(self, harness: KeyHarness) -> None:
        client, store, settings = harness
        owner = create_principal(store, "keys@x.com")
        resp = client.post(
            "/api/v1/api-keys",
            json={"name": "deploy", "scopes": ["users:read", "auth:read"]},
            headers=bearer(settings, store, owner),
        )
        assert resp.status_code == 201, resp.text
        assert resp.headers["Cache-Control"] == "no-store"
        created = resp.json()
        assert len(created["key"]) == 64
        assert created["key"].startswith(created["key_prefix"])
        assert created["scopes"] == ["auth:read", "users:read"]
        assert store.list_audit_events(principal_id=owner.id, event_type="api_key_created")

        listed = client.get("/api/v1/api-keys", headers=bearer(settings, store, owner)).json()
        assert [k["id"] for k in listed] == [created["id"]]
        assert "key" not in listed[0]

    def test_invalid_scope(self, harness: KeyHarness) -> None:
        client, store, settings = harness
        owner = create_principal(store, "badscope@x.com")
        resp = client.post(
            "/api/v1/api-keys", json={"name": "x", "scopes": ["root:all"]}, headers=bearer(settings, store, owner)
        )
        assert resp.status_code == 422

    def test_admin_scope_requires_admin_permission(self, harness: KeyHarness) -> None:
        client, store, settings = harness
        user = create_principal(store, "noadmin@x.com")
        resp = client.post(
            "/api/v1/api-keys", json={"name": "x", "scopes": ["admin:read"]}, headers=bearer(settings, store, user)
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "access_denied"

        admin = create_principal(store, "keyadmin@x.com", roles=(SystemRole.ADMIN,))
        assert create_key(harness, admin, scopes=["admin:read"])["scopes"] == ["admin:read"]

    def test_update(self, harness: KeyHarness) -> None:
        client, store, settings = harness
        owner = create_principal(store, "patch@x.com")
        key = create_key(harness, owner)
        resp = client.patch(
            f"/api/v1/api-keys/{key['id']}",
            json={"name": "renamed", "rate_limit_requests": 5},
            headers=bearer(settings, store, owner),
        )
        assert resp.status_code == 200
        assert resp.json()["name"] == "renamed"
        assert resp.json()["rate_limit_requests"] == 5

    def test_revoke_is_owner_only(self, harness: KeyHarness) -> None:
        client, store, settings = harness
        owner = create_principal(store, "revoker@x.com")
        other = create_principal(store, "stranger@x.com")
        key = create_key(harness, owner)
        assert client.get("/api/v1/machine/whoami", headers=key_auth(key)).status_code == 200

        resp = client.delete(f"/api/v1/api-keys/{key['id']}", headers=bearer(settings, store, other))
        assert resp.status_code == 404
        resp = client.delete(f"/api/v1/api-keys/{key['id']}", headers=bearer(settings, store, owner))
        assert resp.status_code == 204

        resp = client.get("/api/v1/machine/whoami", headers=key_auth(key))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_api_key"
        listed = client.get(
            "/api/v1/api-keys", params={"include_revoked": "true"}, headers=bearer(settings, store, owner)
        ).json()
        assert listed[0]["revoked"] is True


class TestMachineEndpoints:
    def test_whoami_budget_and_usage(self, harness: KeyHarness) -> None:
        client, store, settings = harness
        owner = create_principal(store, "budget@x.com")
        key = create_key(harness, owner, rate_limit_requests=3, rate_limit_window=60)

        for remaining in ("2", "1", "0"):
            resp = client.get("/api/v1/machine/whoami", headers=key_auth(key))
            assert resp.status_code == 200, resp.text
            assert resp.headers["X-RateLimit-Limit"] == "3"
            assert resp.headers["X-RateLimit-Window"] == "60"
            assert resp.headers["X-RateLimit-Remaining"] == remaining
        body = resp.json()
        assert body["principal_id"] == owner.id
        assert body["key_id"] == key["id"]

        resp = client.get("/api/v1/machine/whoami", headers=key_auth(key))
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "60"
        assert resp.json()["error"]["code"] == "rate_limited"

        usage = client.get(f"/api/v1/api-keys/{key['id']}/usage", headers=bearer(settings, store, owner))
        assert usage.status_code == 200
        stats = usage.json()
        assert stats["total_requests"] == 4
        assert stats["by_status"] == {"200": 3, "429": 1}
        assert stats["by_endpoint"] == {"/api/v1/machine/whoami": 4}

    def test_principal_lookup_is_bounded_by_owner(self, harness: KeyHarness) -> None:
        client, store, _settings = harness
        owner = create_principal(store, "reader@x.com")
        other = create_principal(store, "someone@x.com")
        key = create_key(harness, owner, scopes=["users:read"])

        resp = client.get(f"/api/v1/machine/principals/{owner.id}", headers=key_auth(key))
        assert resp.status_code == 200
        assert resp.json()["email"] == "reader@x.com"
        assert client.get(f"/api/v1/machine/principals/{other.id}", headers=key_auth(key)).status_code == 404

        admin = create_principal(store, "directory@x.com", roles=(SystemRole.ADMIN,))
        admin_key = create_key(harness, admin, scopes=["users:read"])
        resp = client.get(f"/api/v1/machine/principals/{other.id}", headers=key_auth(admin_key))
        assert resp.status_code == 200

    def test_missing_scope(self, harness: KeyHarness) -> None:
        client, store, _settings = harness
        owner = create_principal(store, "scopeless@x.com")
        key = create_key(harness, owner, scopes=["apps:read"])
        resp = client.get(f"/api/v1/machine/principals/{owner.id}", headers=key_auth(key))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "insufficient_scope"

    def test_rejected_credentials(self, harness: KeyHarness) -> None:
        client, store, settings = harness
        resp = client.get("/api/v1/machine/whoami")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

        user = create_principal(store, "jwt@x.com")
        for headers in ({"Authorization": "Bearer " + "0" * 64}, bearer(settings, store, user)):
            resp = client.get("/api/v1/machine/whoami", headers=headers)
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "invalid_api_key"
