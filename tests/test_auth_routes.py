"""
tests/test_auth_routes.py -- Integration tests for password accounts and sessions.

These tests exercise the full stack: FastAPI routing -> limiter and auth
dependencies -> flow manager / token service -> CredentialStore -> error
envelope. Unit testing the route functions alone would miss the exception
handlers, cookies and response headers, which are part of the contract.

Coverage:
  - GET /health, GET /auth/providers (public)
  - POST /auth/register: 201, duplicate 409, validation 422 (captcha token required)
  - POST /auth/login: bad credentials 401, provider lock-in 403, audit rows
  - GET /auth/me: 401 without a token or with a refresh token, 200 with roles
  - POST /auth/logout and /auth/refresh (body and cookie)
  - POST /auth/password: wrong current 401, success revokes every session
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from auth.capabilities import Provider
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.config import Settings
from tests.conftest import bearer, create_principal, running_app

AuthHarness = tuple[TestClient, CredentialStore, Settings]

# Accepted without a network call: the test settings run in DEBUG with no
# Turnstile secret configured.
TOKEN = "turnstile-test-token"


@pytest.fixture(scope="module")
def harness() -> Generator[AuthHarness, None, None]:
    with running_app("auth_routes") as (client, store, settings, _provider):
        yield client, store, settings


class TestPublicEndpoints:
    def test_health(self, harness: AuthHarness) -> None:
        client, _store, _settings = harness
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "version": "1.0.0"}

    def test_providers(self, harness: AuthHarness) -> None:
        client, _store, _settings = harness
        resp = client.get("/api/v1/auth/providers")
        assert resp.status_code == 200
        assert [p["name"] for p in resp.json()] == ["email", "google", "github"]


class TestRegister:
    def test_register_sets_session(self, harness: AuthHarness) -> None:
        client, store, _settings = harness
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": "New@X.com", "password": "pw12345678", "display_name": "New", "turnstile_token": TOKEN},
        )
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["user"]["email"] == "new@x.com"
        assert body["user"]["provider"] == "email"
        assert body["tokens"]["expires_in"] == 15 * 60
        assert "access_token" in resp.cookies
        assert resp.headers["Cache-Control"] == "no-store"
        assert store.list_audit_events(event_type="register")

    def test_duplicate_email(self, harness: AuthHarness) -> None:
        client, store, _settings = harness
        create_principal(store, "taken@x.com")
        resp = client.post(
            "/api/v1/auth/register", json={"email": "taken@x.com", "password": "pw12345678", "turnstile_token": TOKEN}
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_validation(self, harness: AuthHarness) -> None:
        client, _store, _settings = harness
        resp = client.post(
            "/api/v1/auth/register", json={"email": "not-an-email", "password": "pw12345678", "turnstile_token": TOKEN}
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        resp = client.post(
            "/api/v1/auth/register", json={"email": "short@x.com", "password": "short", "turnstile_token": TOKEN}
        )
        assert resp.status_code == 422
        resp = client.post("/api/v1/auth/register", json={"email": "nocaptcha@x.com", "password": "pw12345678"})
        assert resp.status_code == 422


class TestLogin:
    def test_bad_credentials(self, harness: AuthHarness) -> None:
        client, store, _settings = harness
        create_principal(store, "bad@x.com")
        resp = client.post("/api/v1/auth/login", json={"email": "bad@x.com", "password": "wrong-password"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"
        assert store.list_audit_events(event_type="login_failure")

    def test_provider_lock_in(self, harness: AuthHarness) -> None:
        client, store, _settings = harness
        create_principal(store, "g@x.com", password=None, provider=Provider.GOOGLE, provider_user_id="g-1")
        resp = client.post("/api/v1/auth/login", json={"email": "g@x.com", "password": "pw12345678"})
        assert resp.status_code == 403
        error = resp.json()["error"]
        assert error["code"] == "provider_lock_in"
        assert error["registered_providers"] == ["google"]
        assert store.list_audit_events(event_type="provider_lock_in")


class TestSession:
    def test_me_requires_authentication(self, harness: AuthHarness) -> None:
        client, _store, _settings = harness
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_me(self, harness: AuthHarness) -> None:
        client, store, settings = harness
        user = create_principal(store, "me@x.com")
        resp = client.get("/api/v1/auth/me", headers=bearer(settings, store, user))
        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == user.id
        assert body["providers"] == ["email"]
        assert body["roles"] == ["role-user"]
        assert body["permissions"] == ["apps:read", "webhooks:read"]

    def test_refresh_token_is_not_a_session(self, harness: AuthHarness) -> None:
        client, store, settings = harness
        client.cookies.clear()
        user = create_principal(store, "rt@x.com")
        refresh = TokenService(store, settings).issue_refresh_token(user.id)
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {refresh}"})
        assert resp.status_code == 401

    def test_disabled_account_loses_access(self, harness: AuthHarness) -> None:
        client, store, settings = harness
        client.cookies.clear()
        user = create_principal(store, "off@x.com")
        headers = bearer(settings, store, user)
        store.update_principal(user.id, is_active=False)
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 401

    def test_logout_revokes_refresh_token(self, harness: AuthHarness) -> None:
        client, store, _settings = harness
        create_principal(store, "out@x.com")
        tokens = client.post("/api/v1/auth/login", json={"email": "out@x.com", "password": "pw12345678"}).json()["tokens"]

        resp = client.post("/api/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200
        assert resp.json() == {"message": "Logged out."}
        # Idempotent
        assert client.post("/api/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]}).status_code == 200

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_grant"

    def test_refresh_from_cookie(self, harness: AuthHarness) -> None:
        client, store, _settings = harness
        client.cookies.clear()
        create_principal(store, "cookie@x.com")
        login = client.post("/api/v1/auth/login", json={"email": "cookie@x.com", "password": "pw12345678"})
        assert "refresh_token" in login.cookies

        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 200, resp.text
        assert resp.json()["refresh_token"] != login.json()["tokens"]["refresh_token"]

    def test_refresh_without_token(self, harness: AuthHarness) -> None:
        client, _store, _settings = harness
        client.cookies.clear()
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"


class TestPasswordChange:
    def test_wrong_current_password(self, harness: AuthHarness) -> None:
        client, store, settings = harness
        user = create_principal(store, "pw1@x.com")
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": "wrong-password", "new_password": "new-password-1"},
            headers=bearer(settings, store, user),
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"

    def test_change_revokes_sessions(self, harness: AuthHarness) -> None:
        client, store, settings = harness
        user = create_principal(store, "pw2@x.com")
        pair = TokenService(store, settings).issue_token_pair(user.id, user.email, "email")

        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": "pw12345678", "new_password": "new-password-1"},
            headers={"Authorization": f"Bearer {pair.access_token}"},
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["revoked_sessions"] == 1
        assert store.list_audit_events(principal_id=user.id, event_type="password_changed")

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": pair.refresh_token})
        assert resp.status_code == 400
        login = client.post("/api/v1/auth/login", json={"email": "pw2@x.com", "password": "new-password-1"})
        assert login.status_code == 200
