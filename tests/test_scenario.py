"""
tests/test_scenario.py -- End-to-end password account lifecycle over HTTP.

Register, sign in, hit the login limiter, then rotate the refresh token and
confirm the superseded token is dead. Runs against the real app with an
isolated store (see conftest.running_app).
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from tests.conftest import running_app


@pytest.fixture(scope="module")
def client() -> Generator[TestClient, None, None]:
    with running_app("scenario") as (client, _store, _settings, _provider):
        yield client


def test_password_account_lifecycle(client: TestClient) -> None:
    creds = {"email": "a@x.com", "password": "pw12345678"}

    resp = client.post("/api/v1/auth/register", json={**creds, "turnstile_token": "turnstile-test-token"})
    assert resp.status_code == 201, resp.text
    assert resp.json()["user"]["email"] == "a@x.com"

    resp = client.post("/api/v1/auth/login", json=creds)
    assert resp.status_code == 200, resp.text
    first = resp.json()["tokens"]
    assert first["access_token"] and first["refresh_token"]
    assert first["token_type"] == "Bearer"
    assert resp.headers["Cache-Control"] == "no-store"

    # Logins 2..10 are inside the budget, the 11th trips the block.
    for attempt in range(2, 11):
        resp = client.post("/api/v1/auth/login", json=creds)
        assert resp.status_code == 200, f"attempt {attempt}: {resp.text}"
    resp = client.post("/api/v1/auth/login", json=creds)
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "900"
    assert resp.json()["error"]["code"] == "rate_limited"
    assert resp.json()["error"]["retry_after"] == 900

    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
    assert resp.status_code == 200, resp.text
    rotated = resp.json()
    assert rotated["refresh_token"] != first["refresh_token"]

    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_grant"

    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {rotated['access_token']}"})
    assert me.status_code == 200
    assert me.json()["email"] == "a@x.com"
