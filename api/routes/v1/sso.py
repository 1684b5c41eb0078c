"""
api/routes/v1/sso.py -- Token verification for relying services.

Routes:
  GET  /api/v1/sso/verify?token=...&client_id=...
  POST /api/v1/sso/verify   (Authorization: Bearer <token>, or {"token": ...};
                             optional X-Client-Id header)

A relying service passes an access token it received and learns who it
belongs to. Only access tokens verify; a refresh token is rejected. The
principal must still exist and be active, so a disabled account stops
verifying before its last access token expires.

Both routes are public and throttled per IP by slowapi.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request

from api.limiter import PUBLIC_LIMIT, limiter
from api.models import SsoUser, SsoVerifyRequest, SsoVerifyResponse
from auth.dependencies import bearer_token, get_store, get_token_service
from auth.tokens import ACCESS

router = APIRouter()


def _verify(request: Request, token: str | None, client_id: str | None) -> SsoVerifyResponse:
    claims = get_token_service(request).verify(token or "", expected_type=ACCESS)
    principal = get_store(request).get_principal(claims.subject_id) if claims else None
    if claims is None or principal is None or not principal.is_active:
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_token", "message": "Token is invalid or expired."},
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )
    return SsoVerifyResponse(
        user=SsoUser(
            sub=claims.subject_id,
            email=claims.email,
            provider=claims.provider,
            iat=int(claims.issued_at.timestamp()),
            exp=int(claims.expires_at.timestamp()),
        ),
        client_id=client_id,
        authenticated_at=datetime.now(timezone.utc).isoformat(),
    )


@limiter.limit(PUBLIC_LIMIT)
@router.get("/sso/verify", response_model=SsoVerifyResponse)
def verify_get(request: Request, token: str | None = None, client_id: str | None = None) -> SsoVerifyResponse:
    return _verify(request, token or bearer_token(request), client_id)


@limiter.limit(PUBLIC_LIMIT)
@router.post("/sso/verify", response_model=SsoVerifyResponse)
def verify_post(request: Request, body: SsoVerifyRequest | None = None) -> SsoVerifyResponse:
    """Verify a token sent in the Authorization header (preferred) or the body."""
    token = bearer_token(request) or (body.token if body else None)
    return _verify(request, token, request.headers.get("X-Client-Id"))
