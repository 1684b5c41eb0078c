"""
tests/test_webhooks.py -- Webhook payload signatures.
"""

from __future__ import annotations

import hashlib
import hmac

from auth.webhooks import sign_payload, verify_signature

BODY = b'{"event":"user.created","id":"p-1"}'


def test_signature_is_hex_hmac_sha256() -> None:
    assert sign_payload("whsec", BODY) == hmac.new(b"whsec", BODY, hashlib.sha256).hexdigest()


def test_verify_accepts_matching_signature() -> None:
    signature = sign_payload("whsec", BODY)
    assert verify_signature("whsec", BODY, signature)
    assert verify_signature("whsec", BODY, f"  {signature.upper()} ")


def test_verify_rejects_altered_body_or_secret() -> None:
    signature = sign_payload("whsec", BODY)
    assert not verify_signature("whsec", BODY + b" ", signature)
    assert not verify_signature("other", BODY, signature)
    assert not verify_signature("whsec", BODY, "")
