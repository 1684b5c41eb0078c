"""
auth/captcha.py -- Cloudflare Turnstile verification for self-service sign-up.

The browser widget yields a one-time token; the server confirms it with
Cloudflare's siteverify endpoint before creating an account. Any failure
to get a positive answer (network error, non-200, success=false) counts
as a failed check.

Without TURNSTILE_SECRET_KEY the check passes only in DEBUG, so a
production deployment that forgot the key refuses registrations instead
of silently accepting bots.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("elixpo.captcha")

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


def verify_turnstile(
    settings: Settings,
    token: str,
    remote_ip: str | None = None,
    transport: httpx.BaseTransport | None = None,
) -> bool:
    """True if Cloudflare accepts `token`.

    Args:
        settings:  Supplies the secret key and the outbound timeout.
        token:     The cf-turnstile-response value posted by the browser.
        remote_ip: Client address, forwarded to Cloudflare when known.
        transport: httpx transport override; tests pass a MockTransport.
    """
    if not settings.turnstile_secret_key:
        logger.warning("TURNSTILE_SECRET_KEY not configured; captcha %s", "skipped (debug)" if settings.debug else "refused")
        return settings.debug
    if not token:
        return False

    payload = {"secret": settings.turnstile_secret_key, "response": token}
    if remote_ip:
        payload["remoteip"] = remote_ip
    try:
        with httpx.Client(timeout=settings.provider_timeout_seconds, transport=transport) as client:
            resp = client.post(TURNSTILE_VERIFY_URL, json=payload)
    except httpx.HTTPError as exc:
        logger.error("captcha verification request failed: %s", exc)
        return False

    if resp.status_code != 200:
        logger.error("captcha verification returned HTTP %d", resp.status_code)
        return False
    try:
        data = resp.json()
    except ValueError:
        logger.error("captcha verification returned a non-JSON body")
        return False
    if not isinstance(data, dict) or not data.get("success"):
        logger.info("captcha rejected: %s", data.get("error-codes") if isinstance(data, dict) else data)
        return False
    return True
