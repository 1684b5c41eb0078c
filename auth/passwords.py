"""
auth/passwords.py -- Password hashing and constant-time authentication.

New hashes are bcrypt (direct usage, no passlib wrapper). Accounts imported
from the previous deployment carry "salt:hash" PBKDF2-SHA256 records
(100 000 iterations, 64-byte derived key, both parts hex); verify_password()
accepts either format so those users can still sign in, and
needs_rehash() tells the login route to upgrade them to bcrypt.

The _DUMMY_HASH constant enables timing equalization in
authenticate_principal() so response time does not reveal whether an email
is registered [C1].

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.models import Principal
    from auth.store import CredentialStore

_PBKDF2_ITERATIONS = 100_000
_PBKDF2_DKLEN = 64


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; the API layer caps passwords at
    255 characters, and nothing relies on bytes past 72 being significant.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def _is_legacy(hashed: str) -> bool:
    return not hashed.startswith("$2") and ":" in hashed


def _verify_pbkdf2(plain: str, hashed: str) -> bool:
    salt, _, expected = hashed.partition(":")
    derived = hashlib.pbkdf2_hmac(
        "sha256", plain.encode("utf-8"), salt.encode("utf-8"), _PBKDF2_ITERATIONS, dklen=_PBKDF2_DKLEN
    )
    return hmac.compare_digest(derived.hex(), expected.lower())


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches a bcrypt or legacy PBKDF2 hash. Never raises."""
    if _is_legacy(hashed):
        return _verify_pbkdf2(plain, hashed)
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def needs_rehash(hashed: str) -> bool:
    return _is_legacy(hashed)


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("elixpo_timing_dummy")


def authenticate_principal(store: CredentialStore, email: str, password: str) -> Principal | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the principal exists:
    - Unknown email or provider-only account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the Principal on success, None on any failure (including an
    inactive account).
    """
    principal = store.get_principal_by_email(email)
    if principal is None or principal.password_hash is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, principal.password_hash):
        return None
    if not principal.is_active:
        return None
    return principal
