"""
auth/oauth.py -- Built-in identity providers and profile normalization.

Provider endpoints are static (no discovery round-trip on the login path).
A provider is enabled only when both its client ID and secret are configured.

Profile normalization is a small polymorphic interface: one ProfileSource per
provider knows how to fetch the raw profile with an authorized client and how
to map it to a NormalizedProfile {subject_id, email, name, avatar_url}.
PROFILE_SOURCES selects the implementation by provider tag.

Security notes:
  [H1] Email verification is mandatory. normalize() raises ValueError if the
       provider does not confirm the email is verified. An unverified email
       could be a victim's address added by an attacker, and email is what
       provider lock-in keys on.

  Every outbound call goes through an authlib AsyncOAuth2Client (httpx
  transport) built with Settings.provider_timeout_seconds, so no provider
  call can hang a request.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from authlib.integrations.httpx_client import AsyncOAuth2Client

from auth.capabilities import Provider
from auth.models import NormalizedProfile

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("elixpo.oauth")


@dataclass(frozen=True)
class ProviderConfig:
    provider: Provider
    label: str
    client_id: str
    client_secret: str
    authorize_url: str
    token_url: str
    userinfo_url: str
    scopes: tuple[str, ...]
    emails_url: str | None = None


def get_provider_configs(settings: Settings) -> dict[Provider, ProviderConfig]:
    """Return the configured built-in providers, keyed by provider tag."""
    configs: dict[Provider, ProviderConfig] = {}
    if settings.google_client_id and settings.google_client_secret:
        configs[Provider.GOOGLE] = ProviderConfig(
            provider=Provider.GOOGLE,
            label="Google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
            token_url="https://oauth2.googleapis.com/token",  # noqa: S106 -- URL, not a password
            userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
            scopes=("openid", "profile", "email"),
        )
    if settings.github_client_id and settings.github_client_secret:
        configs[Provider.GITHUB] = ProviderConfig(
            provider=Provider.GITHUB,
            label="GitHub",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            authorize_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            userinfo_url="https://api.github.com/user",
            emails_url="https://api.github.com/user/emails",
            scopes=("read:user", "user:email"),
        )
    return configs


def callback_url(settings: Settings, provider: Provider) -> str:
    """The redirect URI registered with the provider for this deployment."""
    return f"{settings.app_url.rstrip('/')}/api/v1/auth/callback/{provider.value}"


def default_client_factory(config: ProviderConfig, redirect_uri: str, timeout: float) -> AsyncOAuth2Client:
    """Build the authlib client used for one code exchange.

    client_secret_post matches what both built-in providers document for
    confidential web clients. The timeout bounds connect and read for every
    request the client makes.
    """
    return AsyncOAuth2Client(
        client_id=config.client_id,
        client_secret=config.client_secret,
        redirect_uri=redirect_uri,
        scope=" ".join(config.scopes),
        token_endpoint_auth_method="client_secret_post",  # noqa: S106 -- auth method name, not a password
        timeout=timeout,
    )


# ---------------------------------------------------------------------------
# Profile sources [H1]
# ---------------------------------------------------------------------------


class ProfileSource(ABC):
    """Fetches and normalizes one provider's user profile."""

    @abstractmethod
    async def fetch(self, client, config: ProviderConfig) -> dict:
        """Return the raw profile using an already-authorized client."""

    @abstractmethod
    def normalize(self, raw: dict) -> NormalizedProfile:
        """Map the raw profile. Raises ValueError if no verified email is present."""


class GoogleProfileSource(ProfileSource):
    async def fetch(self, client, config: ProviderConfig) -> dict:
        resp = await client.get(config.userinfo_url)
        resp.raise_for_status()
        return resp.json()

    def normalize(self, raw: dict) -> NormalizedProfile:
        if not raw.get("email_verified", False):
            raise ValueError(
                "Google OAuth: email is not verified. "
                "The provider must confirm email ownership before login is allowed."
            )
        email = raw.get("email")
        subject_id = raw.get("sub")
        if not email or not subject_id:
            raise ValueError("Google OAuth: missing email or sub claim in userinfo")
        return NormalizedProfile(
            subject_id=str(subject_id),
            email=email.lower(),
            name=raw.get("name"),
            avatar_url=raw.get("picture"),
        )


class GitHubProfileSource(ProfileSource):
    """GitHub needs two calls: /user for the stable numeric id, /user/emails for the email."""

    async def fetch(self, client, config: ProviderConfig) -> dict:
        resp = await client.get(config.userinfo_url)
        resp.raise_for_status()
        profile = resp.json()
        emails_resp = await client.get(config.emails_url)
        emails_resp.raise_for_status()
        return {**profile, "emails": emails_resp.json()}

    def normalize(self, raw: dict) -> NormalizedProfile:
        email: str | None = None
        for entry in raw.get("emails") or []:
            if entry.get("primary") and entry.get("verified"):
                email = entry["email"]
                break
        if not email:
            raise ValueError(
                "GitHub OAuth: no primary verified email found. "
                "The user must verify their email address on GitHub before logging in."
            )
        if raw.get("id") is None:
            raise ValueError("GitHub OAuth: profile has no id")
        return NormalizedProfile(
            subject_id=str(raw["id"]),
            email=email.lower(),
            name=raw.get("name") or raw.get("login"),
            avatar_url=raw.get("avatar_url"),
        )


PROFILE_SOURCES: dict[Provider, ProfileSource] = {
    Provider.GOOGLE: GoogleProfileSource(),
    Provider.GITHUB: GitHubProfileSource(),
}
