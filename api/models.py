"""
API request and response models for the Elixpo Accounts REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Capability fields are typed with the closed enums from auth/capabilities.py,
so an unknown scope or permission name is a 422 before any handler runs.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.capabilities import ApiKeyScope, OAuthScope, PermissionName

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload. Optional fields are omitted when unset."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    retry_after: Optional[int] = None
    registered_providers: Optional[list[str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Password accounts and sessions
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=8, max_length=255)
    display_name: Optional[str] = Field(default=None, max_length=255)
    # Cloudflare Turnstile widget response.
    turnstile_token: str = Field(min_length=1, max_length=2048)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255)
    password: str = Field(max_length=255)


class RefreshRequest(BaseModel):
    """Body for /auth/refresh and /auth/logout. Falls back to the refresh_token cookie."""

    refresh_token: Optional[str] = None


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(max_length=255)
    new_password: str = Field(min_length=8, max_length=255)


class TokenPairResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: Optional[str] = None


class PrincipalInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    provider: Optional[str] = None
    display_name: Optional[str] = None


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: PrincipalInfo
    tokens: TokenPairResponse


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    providers: list[str]
    roles: list[str]
    permissions: list[str]
    created_at: Optional[str] = None
    last_login: Optional[str] = None


class ProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# Authorization flow
# ---------------------------------------------------------------------------


class ConsentPrompt(BaseModel):
    """Returned by GET /auth/authorize when a signed-in user must approve a client."""

    model_config = ConfigDict(frozen=True)

    state: str
    client_id: str
    client_name: str
    redirect_uri: str
    scopes: list[OAuthScope]


class ConsentRequest(BaseModel):
    state: str = Field(min_length=1, max_length=128)
    approved: bool


class RedirectResponseBody(BaseModel):
    model_config = ConfigDict(frozen=True)

    redirect_to: str


class TokenRequest(BaseModel):
    """RFC 6749-style token request. Field relevance depends on grant_type."""

    grant_type: str
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    code_verifier: Optional[str] = Field(default=None, max_length=128)
    refresh_token: Optional[str] = None


class ClientRegistrationRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    redirect_uris: list[str] = Field(min_length=1, max_length=10)
    scopes: list[OAuthScope] = Field(
        default_factory=lambda: [OAuthScope.OPENID, OAuthScope.PROFILE, OAuthScope.EMAIL],
        min_length=1,
    )


class ClientInfoResponse(BaseModel):
    """Public view of a registered client. Never includes secret material."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    name: str
    redirect_uris: list[str]
    scopes: list[OAuthScope]
    is_active: bool
    created_at: Optional[str] = None


class ClientRegistrationResponse(ClientInfoResponse):
    client_secret: str
    notice: str = "Store the client secret now. It cannot be retrieved again."


# ---------------------------------------------------------------------------
# SSO verification
# ---------------------------------------------------------------------------


class SsoVerifyRequest(BaseModel):
    token: Optional[str] = None


class SsoUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    sub: str
    email: str
    provider: Optional[str] = None
    iat: int
    exp: int


class SsoVerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool = True
    user: SsoUser
    client_id: Optional[str] = None
    authenticated_at: str


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    scopes: list[ApiKeyScope] = Field(min_length=1)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=3650)
    rate_limit_requests: int = Field(default=1000, ge=1, le=100_000)
    rate_limit_window: int = Field(default=60, ge=1, le=86_400)


class ApiKeyPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    scopes: Optional[list[ApiKeyScope]] = Field(default=None, min_length=1)
    rate_limit_requests: Optional[int] = Field(default=None, ge=1, le=100_000)
    rate_limit_window: Optional[int] = Field(default=None, ge=1, le=86_400)


class ApiKeyResponse(BaseModel):
    """An API key as listed to its owner. The raw key is never included."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    key_prefix: str
    scopes: list[ApiKeyScope]
    rate_limit_requests: int
    rate_limit_window: int
    created_at: Optional[str] = None
    last_used_at: Optional[str] = None
    expires_at: Optional[str] = None
    revoked: bool = False


class ApiKeyCreatedResponse(ApiKeyResponse):
    key: str
    notice: str = "Store this key now. It cannot be retrieved again."


class ApiKeyUsageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_id: str
    hours: int
    total_requests: int
    average_response_ms: float
    by_endpoint: dict[str, int]
    by_status: dict[str, int]


class WhoAmIResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_id: str
    key_name: str
    principal_id: str
    scopes: list[ApiKeyScope]


# ---------------------------------------------------------------------------
# RBAC administration
# ---------------------------------------------------------------------------


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: PermissionName
    resource: str
    action: str
    display_name: str = ""
    description: str = ""


class PermissionCreate(BaseModel):
    name: PermissionName
    display_name: str = Field(default="", max_length=100)
    description: str = Field(default="", max_length=500)


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    system_role: bool
    permissions: list[PermissionName]


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    permissions: list[PermissionName] = Field(default_factory=list)


class RolePatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class RolePermissionsUpdate(BaseModel):
    permissions: list[PermissionName]


class RoleAssignmentRequest(BaseModel):
    role_id: str = Field(min_length=1, max_length=64)


class RoleAssignmentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    principal_id: str
    role_id: str
    assigned_by: Optional[str] = None
    assigned_at: Optional[str] = None


class PrincipalPermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    principal_id: str
    super_admin: bool
    roles: list[str]
    permissions: list[PermissionName]


class PrincipalResponse(BaseModel):
    """A principal as listed to administrators. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    display_name: Optional[str] = None
    is_active: bool
    created_at: Optional[str] = None
    last_login: Optional[str] = None


class PrincipalPatch(BaseModel):
    is_active: Optional[bool] = None
    display_name: Optional[str] = Field(default=None, max_length=255)


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    event_type: str
    status: str
    principal_id: Optional[str] = None
    provider: Optional[str] = None
    ip_address: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str
