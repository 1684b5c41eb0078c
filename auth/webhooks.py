"""
auth/webhooks.py -- Webhook payload signatures.

Outbound deliveries carry X-Elixpo-Signature: hex HMAC-SHA256 over the raw
JSON body, keyed with the subscriber's secret. Receivers recompute and
compare in constant time. Delivery and retries live outside this package.
"""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_HEADER = "X-Elixpo-Signature"


def sign_payload(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, raw_body: bytes, signature: str) -> bool:
    """True only if `signature` is the hex HMAC of exactly these bytes."""
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, raw_body), signature.strip().lower())
