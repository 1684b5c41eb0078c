"""
tests/conftest.py -- Shared fixtures for Elixpo Accounts tests.

This module provides:
  - make_store(): an isolated in-memory credential store
  - make_settings(): development Settings with both providers enabled
  - FakeProvider: a scripted stand-in for Google/GitHub behind the flow manager
  - running_app(): the real FastAPI app on a patched lifespan, as a TestClient
  - create_principal() / bearer(): seed accounts and sign requests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY (and selects HS256) instead of raising ValueError
for the missing production signing keys.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator, Iterator
from contextlib import asynccontextmanager, contextmanager
from urllib.parse import parse_qs, urlsplit

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import httpx
import pytest
from authlib.integrations.base_client import OAuthError
from fastapi.testclient import TestClient

from api.main import app
from auth.capabilities import Provider, SystemRole
from auth.flow import AuthorizationFlowManager
from auth.models import Principal
from auth.passwords import hash_password
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.config import Settings

TEST_SECRET = "test-secret-key-for-elixpo-accounts-0123456789"

# ---------------------------------------------------------------------------
# Store and settings helpers
# ---------------------------------------------------------------------------


def make_store(name: str | None = None) -> CredentialStore:
    """Create an isolated named shared-memory store.

    Args:
        name: Suffix for the database name. Modules sharing one TestClient
              pass a fixed name; function-scoped fixtures get a random one.
    """
    name = name or uuid.uuid4().hex
    return CredentialStore(f"sqlite:///file:test_accounts_{name}?mode=memory&cache=shared&uri=true")


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "app_url": "http://testserver",
        "google_client_id": "google-client-id",
        "google_client_secret": "google-client-secret",
        "github_client_id": "github-client-id",
        "github_client_secret": "github-client-secret",
    }
    values.update(overrides)
    return Settings(**values)


def create_principal(
    store: CredentialStore,
    email: str,
    password: str | None = "pw12345678",
    roles: tuple[SystemRole | str, ...] = (SystemRole.USER,),
    provider: Provider = Provider.EMAIL,
    provider_user_id: str | None = None,
) -> Principal:
    """Insert a principal with one linked identity and the given roles."""
    principal = store.create_principal(email, password_hash=hash_password(password) if password else None)
    store.link_identity(principal.id, provider, provider_user_id or email)
    for role in roles:
        store.assign_role(principal.id, role.value if isinstance(role, SystemRole) else role)
    return store.get_principal(principal.id)


def bearer(settings: Settings, store: CredentialStore, principal: Principal) -> dict[str, str]:
    token = TokenService(store, settings).issue_access_token(principal.id, principal.email, "email")
    return {"Authorization": f"Bearer {token}"}


def query_params(url: str) -> dict[str, str]:
    """Flatten the query string of a redirect URL."""
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


# ---------------------------------------------------------------------------
# Fake identity provider
# ---------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, payload, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("GET", "https://provider.test/")
            raise httpx.HTTPStatusError(
                "provider error", request=request, response=httpx.Response(self.status_code, request=request)
            )

    def json(self):
        return self._payload


class FakeProvider:
    """Scripted identity provider, installed as the flow manager's client factory.

    Authorization codes map to raw profiles in the provider's own shape.
    The code "unreachable" simulates a timeout; any unknown code is rejected
    the way authlib reports a token-endpoint error.
    """

    def __init__(self) -> None:
        self.profiles: dict[str, dict] = {}
        self.token_requests: list[dict] = []

    def add_google_user(self, code: str, sub: str, email: str, verified: bool = True, name: str = "Test User") -> None:
        self.profiles[code] = {
            "user": {"sub": sub, "email": email, "email_verified": verified, "name": name, "picture": None}
        }

    def add_github_user(self, code: str, user_id: int, email: str, verified: bool = True, login: str = "octocat") -> None:
        self.profiles[code] = {
            "user": {"id": user_id, "login": login, "name": None, "avatar_url": None},
            "emails": [
                {"email": "noreply@users.github.test", "primary": False, "verified": True},
                {"email": email, "primary": True, "verified": verified},
            ],
        }

    def __call__(self, config, redirect_uri: str, timeout: float) -> FakeProviderClient:
        return FakeProviderClient(self, config, redirect_uri)


class FakeProviderClient:
    def __init__(self, provider: FakeProvider, config, redirect_uri: str) -> None:
        self._provider = provider
        self._config = config
        self._redirect_uri = redirect_uri
        self._code: str | None = None

    async def __aenter__(self) -> FakeProviderClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    async def fetch_token(self, url: str, code: str | None = None, code_verifier: str | None = None, **kwargs) -> dict:
        self._provider.token_requests.append(
            {"url": url, "code": code, "code_verifier": code_verifier, "redirect_uri": self._redirect_uri}
        )
        if code == "unreachable":
            raise httpx.ConnectTimeout("provider timed out")
        if code not in self._provider.profiles:
            raise OAuthError(error="invalid_grant", description="Bad verification code.")
        self._code = code
        return {"access_token": "provider-access-token", "token_type": "Bearer"}

    async def get(self, url: str, **kwargs) -> FakeResponse:
        profile = self._provider.profiles[self._code]
        if url == self._config.emails_url:
            return FakeResponse(profile.get("emails", []))
        return FakeResponse(profile["user"])


# ---------------------------------------------------------------------------
# Service fixtures (function-scoped, fresh database per test)
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def tokens(store: CredentialStore, settings: Settings) -> TokenService:
    return TokenService(store, settings)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def flow(store: CredentialStore, settings: Settings, tokens: TokenService, fake_provider: FakeProvider) -> AuthorizationFlowManager:
    return AuthorizationFlowManager(store, settings, tokens, client_factory=fake_provider)


# ---------------------------------------------------------------------------
# Application harness
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore, settings: Settings, provider: FakeProvider):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store, settings and fake provider into app.state so
    TestClient routes see an isolated database and never reach the network.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.store = store
        app.state.oauth_client_factory = provider
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@contextmanager
def running_app(name: str, settings: Settings | None = None) -> Iterator[tuple[TestClient, CredentialStore, Settings, FakeProvider]]:
    """Run the real app against a fresh store. Yields (client, store, settings, provider).

    follow_redirects=False: the authorization flow is asserted on redirect
    locations, which are invisible once the client follows them.
    """
    store = make_store(name)
    settings = settings or make_settings()
    provider = FakeProvider()
    app.router.lifespan_context = _patch_lifespan(store, settings, provider)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, store, settings, provider
    store.close()
