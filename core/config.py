"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Elixpo Accounts happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead, or receive the Settings instance the app lifespan stored on
app.state.settings.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): field names map to env var names
      (e.g. jwt_private_key -> JWT_PRIVATE_KEY). Type coercion and validation
      are built in. List fields accept a JSON array in the environment.

  @model_validator(mode="after"): cross-field validation of the signing
      material. Development mode (DEBUG=true) signs tokens with HS256 over
      SECRET_KEY; every other deployment must provide an Ed25519 key pair.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It keys the
       HMAC used for API key, client secret, authorization code and refresh
       token hashes, and signs JWTs in development mode.

  [M7] In production mode a missing SECRET_KEY is a hard startup failure, and
       so is a missing JWT_PRIVATE_KEY / JWT_PUBLIC_KEY pair. HS256 is never
       selected outside DEBUG.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("elixpo.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Signing keys are the exception in
    production mode: the validator refuses to start without them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///elixpo_accounts.db"
    app_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    # PEM-encoded Ed25519 keys (PKCS8 private, SubjectPublicKeyInfo public).
    # Generate a pair with: python main.py generate-keys
    jwt_private_key: str = ""
    jwt_public_key: str = ""
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 30

    # ------------------------------------------------------------------
    # Authorization flow
    # ------------------------------------------------------------------

    authorization_request_ttl_seconds: int = 600
    authorization_code_ttl_seconds: int = 300
    # Upper bound on every outbound call to an identity provider.
    provider_timeout_seconds: float = 10.0
    # The IdP's own web front end. Redirects for this client are accepted when
    # their host is listed in trusted_redirect_hosts; every other client must
    # be registered with an exact redirect URI whitelist.
    first_party_client_id: str = "elixpo-web"
    trusted_redirect_hosts: list[str] = ["localhost", "127.0.0.1", "accounts.elixpo.com"]

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    # Coarse per-IP throttle (slowapi) on public verification endpoints.
    public_rate_limit: str = "60/minute"

    # ------------------------------------------------------------------
    # Registration captcha (Cloudflare Turnstile)
    # ------------------------------------------------------------------

    # Empty means unconfigured: registration is refused unless debug is on.
    turnstile_secret_key: str = ""

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    # Seconds between sweeps of expired rate-limit, handshake and refresh rows.
    purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    max_api_keys_per_principal: int = 10

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def jwt_algorithm(self) -> str:
        """HS256 in development mode, EdDSA (Ed25519) everywhere else."""
        return "HS256" if self.debug and not self.jwt_private_key else "EdDSA"

    @property
    def jwt_signing_key(self) -> str:
        return self.secret_key if self.jwt_algorithm == "HS256" else self.jwt_private_key

    @property
    def jwt_verifying_key(self) -> str:
        return self.secret_key if self.jwt_algorithm == "HS256" else self.jwt_public_key

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_material(self) -> "Settings":
        """Enforce the SECRET_KEY and signing key policy [M6] [M7].

        Dev mode (DEBUG=true): auto-generate a random SECRET_KEY with a
            warning. Tokens will not survive restart -- acceptable locally.
            A configured Ed25519 pair is still honoured so the production
            signing path can be exercised in development.

        Production mode: SECRET_KEY plus both halves of the Ed25519 key pair
            are mandatory.

        Both modes: reject SECRET_KEY values shorter than 32 characters and
            half-configured key pairs.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not survive a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if bool(self.jwt_private_key) != bool(self.jwt_public_key):
            raise ValueError("JWT_PRIVATE_KEY and JWT_PUBLIC_KEY must be configured together.")
        if not self.debug and not self.jwt_private_key:
            raise ValueError(
                "JWT_PRIVATE_KEY and JWT_PUBLIC_KEY (Ed25519, PEM) are required in production mode. "
                "Generate a pair with: python main.py generate-keys"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or build Settings(...) directly
    and hand it to the service under test.
    """
    return Settings()
