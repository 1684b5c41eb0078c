"""
auth/flow.py -- OAuth2 / OIDC authorization-code handshake and account resolution.

Two kinds of relying party go through here:

  First-party (Settings.first_party_client_id): the IdP's own front end.
      Its redirect URIs are accepted when their host is in
      Settings.trusted_redirect_hosts. A completed provider login yields a
      token pair directly.

  Registered third-party clients (ClientApplication): redirect URIs must match
      an entry of the client's whitelist EXACTLY, requested scopes must be a
      subset of the client's scopes, and the client authenticates with its
      secret at /token. The end user authenticates (provider login, or an
      existing session), then consents; consent mints a single-use
      authorization code bound to the authenticated principal, and /token
      exchanges it for tokens issued to that principal.

Handshake security:
  state  -- secrets.token_urlsafe(32) (256 bits), unique, stored server-side,
            compared in constant time, consumed exactly once by a
            compare-and-swap in the store.
  nonce  -- secrets.token_urlsafe(32), forwarded to the provider.
  PKCE   -- S256 pair toward the provider (verifier stays server-side) and,
            optionally, S256 from the third-party client toward us.
  TTL    -- Settings.authorization_request_ttl_seconds (10 min default).

Provider lock-in [H4]: an email already registered through one provider (or
with a password) cannot be claimed by a login through another provider.
Linking by email match would let whoever controls the second provider
account take over the principal.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from sqlalchemy.exc import IntegrityError

from auth.capabilities import OAuthScope, Provider, SystemRole
from auth.errors import (
    AccessDeniedError,
    ConflictError,
    InvalidClientError,
    InvalidCredentialsError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidStateError,
    ProviderLockInError,
    ServerError,
    UnauthorizedClientError,
)
from auth.models import AuthorizationRequest, ClientApplication, NormalizedProfile, Principal, TokenPair
from auth.oauth import PROFILE_SOURCES, ProviderConfig, callback_url, default_client_factory, get_provider_configs
from auth.passwords import authenticate_principal, hash_password, needs_rehash, verify_password
from auth.tokens import hash_secret

if TYPE_CHECKING:
    from auth.store import CredentialStore
    from auth.tokens import TokenService
    from core.config import Settings

logger = logging.getLogger("elixpo.flow")

DEFAULT_SCOPES = [OAuthScope.OPENID, OAuthScope.PROFILE, OAuthScope.EMAIL]

ClientFactory = Callable[[ProviderConfig, str, float], object]


@dataclass(frozen=True)
class AuthorizationStart:
    auth_url: str
    state: str
    nonce: str
    request: AuthorizationRequest


@dataclass(frozen=True)
class AuthorizationOutcome:
    principal: Principal
    tokens: TokenPair
    request: AuthorizationRequest
    created: bool
    # True for third-party requests: the principal is authenticated but the
    # client gets nothing until POST /authorize records consent.
    consent_required: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def append_query(uri: str, params: dict[str, str | None]) -> str:
    """Add params to a URI, keeping its existing query. None values are dropped."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthorizationFlowManager:
    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        tokens: TokenService,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._tokens = tokens
        self._client_factory = client_factory or default_client_factory
        self._providers = get_provider_configs(settings)

    @property
    def providers(self) -> dict[Provider, ProviderConfig]:
        return self._providers

    def _hash(self, value: str) -> str:
        return hash_secret(self._settings.secret_key, value)

    # ------------------------------------------------------------------
    # Client validation
    # ------------------------------------------------------------------

    def _is_first_party(self, client_id: str) -> bool:
        return hmac.compare_digest(client_id, self._settings.first_party_client_id)

    def _validate_client(
        self, client_id: str, redirect_uri: str, scopes: list[OAuthScope]
    ) -> ClientApplication | None:
        """Check client_id / redirect_uri / scopes. Returns the client, or None for first-party."""
        if not client_id:
            raise InvalidRequestError("client_id is required.")
        if not redirect_uri:
            raise InvalidRequestError("redirect_uri is required.")
        if self._is_first_party(client_id):
            parts = urlsplit(redirect_uri)
            if parts.scheme not in ("http", "https") or parts.hostname not in self._settings.trusted_redirect_hosts:
                raise InvalidRequestError("redirect_uri is not a trusted destination.")
            if parts.scheme != "https" and not self._settings.debug:
                raise InvalidRequestError("redirect_uri must use HTTPS.")
            return None
        client = self._store.get_client(client_id)
        if client is None or not client.is_active:
            raise InvalidClientError("Unknown or inactive client.")
        if redirect_uri not in client.redirect_uris:
            raise InvalidRequestError("redirect_uri is not registered for this client.")
        unknown = set(scopes) - set(client.scopes)
        if unknown:
            raise InvalidRequestError(
                "Requested scope not allowed for this client: " + " ".join(sorted(s.value for s in unknown))
            )
        return client

    @staticmethod
    def _validate_client_pkce(code_challenge: str | None, code_challenge_method: str | None) -> None:
        if code_challenge is None:
            if code_challenge_method is not None:
                raise InvalidRequestError("code_challenge_method given without code_challenge.")
            return
        if (code_challenge_method or "plain") != "S256":
            raise InvalidRequestError("Only the S256 code_challenge_method is supported.")
        if not 43 <= len(code_challenge) <= 128:
            raise InvalidRequestError("code_challenge has an invalid length.")

    # ------------------------------------------------------------------
    # Begin
    # ------------------------------------------------------------------

    def begin_authorization(
        self,
        provider: Provider,
        client_id: str,
        redirect_uri: str,
        scopes: list[OAuthScope] | None = None,
        client_state: str | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
    ) -> AuthorizationStart:
        """Persist a handshake and return the provider authorization URL."""
        config = self._providers.get(provider)
        if config is None:
            raise InvalidRequestError(f"Provider {provider.value!r} is not enabled.")
        requested = list(scopes) if scopes else list(DEFAULT_SCOPES)
        self._validate_client(client_id, redirect_uri, requested)
        self._validate_client_pkce(code_challenge, code_challenge_method)

        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        verifier = secrets.token_urlsafe(64)
        request = self._store.insert_auth_request(
            AuthorizationRequest(
                state=state,
                nonce=nonce,
                pkce_verifier=verifier,
                provider=provider,
                client_id=client_id,
                redirect_uri=redirect_uri,
                scopes=requested,
                client_state=client_state,
                code_challenge=code_challenge,
                code_challenge_method="S256" if code_challenge else None,
                expires_at=_utcnow() + timedelta(seconds=self._settings.authorization_request_ttl_seconds),
            )
        )
        auth_url = append_query(
            config.authorize_url,
            {
                "client_id": config.client_id,
                "redirect_uri": callback_url(self._settings, provider),
                "response_type": "code",
                "scope": " ".join(config.scopes),
                "state": state,
                "nonce": nonce,
                "code_challenge": create_s256_code_challenge(verifier),
                "code_challenge_method": "S256",
            },
        )
        logger.info("authorization started: provider=%s client=%s", provider.value, client_id)
        return AuthorizationStart(auth_url=auth_url, state=state, nonce=nonce, request=request)

    def begin_consent(
        self,
        principal: Principal,
        client_id: str,
        redirect_uri: str,
        scopes: list[OAuthScope] | None = None,
        client_state: str | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
    ) -> tuple[AuthorizationRequest, ClientApplication]:
        """Open a consent prompt for a principal that already has a session."""
        requested = list(scopes) if scopes else list(DEFAULT_SCOPES)
        client = self._validate_client(client_id, redirect_uri, requested)
        if client is None:
            raise UnauthorizedClientError("The first-party client does not use the consent step.")
        self._validate_client_pkce(code_challenge, code_challenge_method)
        now = _utcnow()
        request = self._store.insert_auth_request(
            AuthorizationRequest(
                state=secrets.token_urlsafe(32),
                client_id=client_id,
                redirect_uri=redirect_uri,
                scopes=requested,
                client_state=client_state,
                code_challenge=code_challenge,
                code_challenge_method="S256" if code_challenge else None,
                principal_id=principal.id,
                # No provider callback will consume this request.
                consumed_at=now,
                expires_at=now + timedelta(seconds=self._settings.authorization_request_ttl_seconds),
            )
        )
        return request, client

    # ------------------------------------------------------------------
    # Complete (provider callback)
    # ------------------------------------------------------------------

    async def complete_authorization(self, provider: Provider, code: str, state: str) -> AuthorizationOutcome:
        """Validate the callback, exchange the code, resolve the principal, issue tokens.

        Raises:
            InvalidRequestError: missing code/state or provider not enabled.
            InvalidStateError: unknown, expired, mismatched, or reused state.
            InvalidGrantError: the provider rejected the code.
            AccessDeniedError: no verified email, or the account is disabled.
            ProviderLockInError: the email belongs to a principal from another provider.
            ServerError: the provider could not be reached in time.
        """
        if not code or not state:
            raise InvalidRequestError("Both code and state are required.")
        config = self._providers.get(provider)
        if config is None:
            raise InvalidRequestError(f"Provider {provider.value!r} is not enabled.")

        now = _utcnow()
        request = self._live_provider_request(provider, state, now)
        if request is None:
            raise InvalidStateError("Authorization state is invalid or has expired.")
        # Claim before any network call so a replayed callback cannot race us.
        if not self._store.consume_auth_request(request.id, now):
            raise InvalidStateError("Authorization state is invalid or has expired.")

        profile = await self._fetch_profile(config, code, request.pkce_verifier)
        principal, created = self._resolve_principal(provider, profile)
        self._store.bind_auth_request_principal(request.id, principal.id)
        self._store.update_last_login(principal.id)
        request.principal_id = principal.id
        request.consumed_at = now

        tokens = self._tokens.issue_token_pair(principal.id, principal.email, provider.value)
        return AuthorizationOutcome(
            principal=principal,
            tokens=tokens,
            request=request,
            created=created,
            consent_required=not self._is_first_party(request.client_id),
        )

    def _live_provider_request(self, provider: Provider, state: str, now: datetime) -> AuthorizationRequest | None:
        """The unconsumed, unexpired request `state` opened toward `provider`, or None."""
        request = self._store.get_auth_request_by_state(state) if state else None
        if (
            request is None
            or not hmac.compare_digest(request.state, state)
            or request.provider != provider
            or request.consumed_at is not None
            or request.expires_at <= now
        ):
            return None
        return request

    def cancel_authorization(self, provider: Provider, state: str) -> str | None:
        """Close a handshake the user abandoned or refused at the provider.

        Consumes the request and returns its client redirect carrying
        error=access_denied and the client's state. None when `state` does not
        name a live request for this provider.
        """
        now = _utcnow()
        request = self._live_provider_request(provider, state, now)
        if request is None or not self._store.consume_auth_request(request.id, now):
            return None
        logger.info("authorization cancelled at %s: client=%s", provider.value, request.client_id)
        return append_query(request.redirect_uri, {"error": "access_denied", "state": request.client_state})

    async def _fetch_profile(self, config: ProviderConfig, code: str, verifier: str | None) -> NormalizedProfile:
        source = PROFILE_SOURCES[config.provider]
        redirect_uri = callback_url(self._settings, config.provider)
        try:
            async with self._client_factory(config, redirect_uri, self._settings.provider_timeout_seconds) as client:
                await client.fetch_token(config.token_url, code=code, code_verifier=verifier)
                raw = await source.fetch(client, config)
        except OAuthError as exc:
            logger.warning("%s rejected the authorization code: %s", config.provider.value, exc)
            raise InvalidGrantError("The identity provider rejected the authorization code.") from exc
        except httpx.HTTPError as exc:
            logger.error("%s request failed: %s", config.provider.value, exc)
            raise ServerError("The identity provider could not be reached.") from exc
        try:
            return source.normalize(raw)
        except ValueError as exc:
            raise AccessDeniedError(str(exc)) from exc

    def _resolve_principal(self, provider: Provider, profile: NormalizedProfile) -> tuple[Principal, bool]:
        """Find or create the principal behind an external identity [H4]."""
        identity = self._store.get_identity(provider, profile.subject_id)
        if identity is not None:
            principal = self._store.get_principal(identity.principal_id)
            if principal is None or not principal.is_active:
                raise AccessDeniedError("This account is disabled.")
            return principal, False

        existing = self._store.get_principal_by_email(profile.email)
        if existing is not None:
            logger.warning("provider lock-in: %s login for email registered via %s", provider.value, existing.providers)
            raise ProviderLockInError(existing.providers)

        try:
            principal = self._store.create_principal(
                profile.email, display_name=profile.name, avatar_url=profile.avatar_url
            )
            self._store.link_identity(principal.id, provider, profile.subject_id)
        except IntegrityError as exc:
            # A concurrent request created the same email or identity first.
            raced = self._store.get_principal_by_email(profile.email)
            raise ProviderLockInError(raced.providers if raced else []) from exc
        self._store.assign_role(principal.id, SystemRole.USER.value)
        logger.info("principal created via %s: %s", provider.value, principal.id)
        return self._store.get_principal(principal.id), True

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    def pending_consent(self, state: str, principal: Principal) -> tuple[AuthorizationRequest, ClientApplication]:
        """Return the consent-pending request behind `state` for this principal."""
        request = self._store.get_auth_request_by_state(state) if state else None
        if (
            request is None
            or not hmac.compare_digest(request.state, state)
            or request.principal_id != principal.id
            or request.code_hash is not None
            or request.expires_at <= _utcnow()
            or self._is_first_party(request.client_id)
        ):
            raise InvalidStateError("No pending authorization for this state.")
        client = self._store.get_client(request.client_id)
        if client is None or not client.is_active:
            raise InvalidClientError("Unknown or inactive client.")
        return request, client

    def grant_consent(self, state: str, principal: Principal) -> str:
        """Record consent: mint a single-use code bound to the principal. Returns the client redirect."""
        request, _client = self.pending_consent(state, principal)
        code = secrets.token_urlsafe(32)
        expires = _utcnow() + timedelta(seconds=self._settings.authorization_code_ttl_seconds)
        if not self._store.attach_authorization_code(request.id, self._hash(code), expires):
            raise InvalidStateError("No pending authorization for this state.")
        logger.info("consent granted: principal=%s client=%s", principal.id, request.client_id)
        return append_query(request.redirect_uri, {"code": code, "state": request.client_state})

    def deny_authorization(self, state: str, principal: Principal) -> str:
        """Drop the request and return the client redirect carrying error=access_denied."""
        request, _client = self.pending_consent(state, principal)
        self._store.delete_auth_request(request.id)
        logger.info("consent denied: principal=%s client=%s", principal.id, request.client_id)
        return append_query(
            request.redirect_uri,
            {
                "error": "access_denied",
                "error_description": "The user denied the request.",
                "state": request.client_state,
            },
        )

    # ------------------------------------------------------------------
    # Code exchange (/token, grant_type=authorization_code)
    # ------------------------------------------------------------------

    def authenticate_client(self, client_id: str, client_secret: str) -> ClientApplication:
        client = self._store.get_client(client_id) if client_id else None
        if client is None or not client.is_active or not client_secret:
            raise InvalidClientError("Client authentication failed.")
        if not hmac.compare_digest(client.secret_hash, self._hash(client_secret)):
            raise InvalidClientError("Client authentication failed.")
        return client

    def exchange_code(
        self,
        code: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> TokenPair:
        """Redeem an authorization code for tokens issued to the consenting principal."""
        if not code or not redirect_uri:
            raise InvalidRequestError("code and redirect_uri are required.")
        if self._is_first_party(client_id):
            raise UnauthorizedClientError("The first-party client is not issued authorization codes.")
        self.authenticate_client(client_id, client_secret)

        now = _utcnow()
        request = self._store.get_auth_request_by_code(self._hash(code))
        if request is None or request.client_id != client_id:
            raise InvalidGrantError("Authorization code is invalid.")
        if request.redirect_uri != redirect_uri:
            raise InvalidGrantError("redirect_uri does not match the authorization request.")
        if request.code_consumed_at is not None or request.code_expires_at is None or request.code_expires_at <= now:
            raise InvalidGrantError("Authorization code is expired or already used.")
        if request.code_challenge:
            if not code_verifier or not hmac.compare_digest(
                create_s256_code_challenge(code_verifier), request.code_challenge
            ):
                raise InvalidGrantError("code_verifier does not match the code_challenge.")
        if not self._store.consume_authorization_code(request.id, now):
            raise InvalidGrantError("Authorization code is expired or already used.")

        principal = self._store.get_principal(request.principal_id) if request.principal_id else None
        if principal is None or not principal.is_active:
            raise InvalidGrantError("The authorizing account is no longer active.")
        return self._tokens.issue_token_pair(
            principal.id,
            principal.email,
            request.provider.value if request.provider else None,
            client_id=client_id,
            scope=" ".join(s.value for s in request.scopes),
        )

    # ------------------------------------------------------------------
    # Client registration
    # ------------------------------------------------------------------

    def register_client(
        self,
        name: str,
        redirect_uris: list[str],
        scopes: list[OAuthScope] | None = None,
        owner_id: str | None = None,
    ) -> tuple[ClientApplication, str]:
        """Register a third-party client. Returns (client, plaintext secret); the secret is shown once."""
        if not redirect_uris:
            raise InvalidRequestError("At least one redirect URI is required.")
        for uri in redirect_uris:
            parts = urlsplit(uri)
            if parts.scheme not in ("http", "https") or not parts.netloc or parts.fragment:
                raise InvalidRequestError(f"Invalid redirect URI: {uri}")
            if parts.scheme != "https" and not self._settings.debug:
                raise InvalidRequestError(f"Redirect URI must use HTTPS: {uri}")
        secret = "secret_" + secrets.token_hex(32)
        client = self._store.insert_client(
            ClientApplication(
                client_id="cli_" + secrets.token_hex(16),
                name=name,
                secret_hash=self._hash(secret),
                redirect_uris=list(dict.fromkeys(redirect_uris)),
                scopes=list(dict.fromkeys(scopes or DEFAULT_SCOPES)),
                owner_id=owner_id,
            )
        )
        logger.info("oauth client registered: %s (%s)", client.client_id, name)
        return client, secret

    # ------------------------------------------------------------------
    # Password accounts
    # ------------------------------------------------------------------

    def register_with_password(self, email: str, password: str, display_name: str | None = None) -> Principal:
        email = normalize_email(email)
        if self._store.get_principal_by_email(email) is not None:
            raise ConflictError("An account with this email already exists.")
        try:
            principal = self._store.create_principal(email, password_hash=hash_password(password), display_name=display_name)
            self._store.link_identity(principal.id, Provider.EMAIL, email)
        except IntegrityError as exc:
            raise ConflictError("An account with this email already exists.") from exc
        self._store.assign_role(principal.id, SystemRole.USER.value)
        return self._store.get_principal(principal.id)

    def login_with_password(self, email: str, password: str) -> Principal:
        """Authenticate a password login.

        Raises ProviderLockInError when the email belongs to a provider-only
        account, InvalidCredentialsError on any other failure.
        """
        email = normalize_email(email)
        existing = self._store.get_principal_by_email(email)
        if existing is not None and existing.identities and Provider.EMAIL.value not in existing.providers:
            raise ProviderLockInError(existing.providers)
        principal = authenticate_principal(self._store, email, password)
        if principal is None:
            raise InvalidCredentialsError("Invalid email or password.")
        if needs_rehash(principal.password_hash):
            self._store.update_principal(principal.id, password_hash=hash_password(password))
        self._store.update_last_login(principal.id)
        return principal

    def change_password(self, principal: Principal, current_password: str, new_password: str) -> int:
        """Replace the password and revoke every refresh token. Returns tokens revoked."""
        if principal.password_hash is None or not verify_password(current_password, principal.password_hash):
            raise InvalidCredentialsError("Current password is incorrect.")
        self._store.update_principal(principal.id, password_hash=hash_password(new_password))
        return self._tokens.revoke_all(principal.id)
