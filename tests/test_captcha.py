"""
tests/test_captcha.py -- Turnstile verification and the registration gate.

siteverify is never reached: unit tests hand verify_turnstile an
httpx.MockTransport, and the HTTP tests patch the check out of the
register route.
"""

from __future__ import annotations

import json
from collections.abc import Generator
from unittest.mock import patch

import httpx
import pytest
from fastapi.testclient import TestClient

from auth.captcha import TURNSTILE_VERIFY_URL, verify_turnstile
from auth.store import CredentialStore
from tests.conftest import make_settings, running_app

SECRET = "0x4AAAAAAAtest-secret"


def transport(status: int = 200, body: object = None, seen: list | None = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json=body if body is not None else {"success": True})

    return httpx.MockTransport(handler)


class TestVerifyTurnstile:
    def test_success_posts_secret_token_and_ip(self) -> None:
        seen: list[httpx.Request] = []
        settings = make_settings(turnstile_secret_key=SECRET)
        assert verify_turnstile(settings, "tok", "203.0.113.9", transport=transport(seen=seen))

        assert len(seen) == 1
        assert str(seen[0].url) == TURNSTILE_VERIFY_URL
        assert json.loads(seen[0].content) == {"secret": SECRET, "response": "tok", "remoteip": "203.0.113.9"}

    def test_rejected_token(self) -> None:
        settings = make_settings(turnstile_secret_key=SECRET)
        body = {"success": False, "error-codes": ["invalid-input-response"]}
        assert not verify_turnstile(settings, "tok", transport=transport(body=body))

    def test_http_error_status(self) -> None:
        settings = make_settings(turnstile_secret_key=SECRET)
        assert not verify_turnstile(settings, "tok", transport=transport(status=500))

    def test_network_failure(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        settings = make_settings(turnstile_secret_key=SECRET)
        assert not verify_turnstile(settings, "tok", transport=httpx.MockTransport(refuse))

    def test_empty_token_is_not_sent(self) -> None:
        seen: list[httpx.Request] = []
        settings = make_settings(turnstile_secret_key=SECRET)
        assert not verify_turnstile(settings, "", transport=transport(seen=seen))
        assert seen == []

    def test_unconfigured_passes_only_in_debug(self) -> None:
        seen: list[httpx.Request] = []
        assert verify_turnstile(make_settings(debug=True), "tok", transport=transport(seen=seen))
        production = make_settings().model_copy(update={"debug": False})
        assert not verify_turnstile(production, "tok", transport=transport(seen=seen))
        assert seen == []


@pytest.fixture(scope="module")
def harness() -> Generator[tuple[TestClient, CredentialStore], None, None]:
    with running_app("captcha", make_settings(turnstile_secret_key=SECRET)) as (client, store, _settings, _provider):
        yield client, store


class TestRegisterGate:
    def test_failed_captcha_creates_nothing(self, harness) -> None:
        client, store = harness
        with patch("api.routes.v1.auth.verify_turnstile", return_value=False) as check:
            resp = client.post(
                "/api/v1/auth/register",
                json={"email": "bot@x.com", "password": "pw12345678", "turnstile_token": "forged"},
            )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"
        assert store.get_principal_by_email("bot@x.com") is None
        _settings, token, ip = check.call_args.args
        assert (token, ip) == ("forged", "testclient")

    def test_verified_captcha_registers(self, harness) -> None:
        client, store = harness
        with patch("api.routes.v1.auth.verify_turnstile", return_value=True):
            resp = client.post(
                "/api/v1/auth/register",
                json={"email": "human@x.com", "password": "pw12345678", "turnstile_token": "ok"},
            )
        assert resp.status_code == 201, resp.text
        assert store.get_principal_by_email("human@x.com") is not None
