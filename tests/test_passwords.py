"""
tests/test_passwords.py -- bcrypt hashing, legacy PBKDF2 records and rehash-on-login.
"""

from __future__ import annotations

import hashlib

from auth.flow import AuthorizationFlowManager
from auth.passwords import authenticate_principal, hash_password, needs_rehash, verify_password


def legacy_hash(password: str, salt: str = "a1b2c3d4e5f6") -> str:
    derived = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 100_000, dklen=64)
    return f"{salt}:{derived.hex()}"


class TestHashing:
    def test_bcrypt_round_trip(self) -> None:
        hashed = hash_password("pw12345678")
        assert hashed.startswith("$2")
        assert verify_password("pw12345678", hashed)
        assert not verify_password("pw12345679", hashed)
        assert not needs_rehash(hashed)

    def test_hashes_are_salted(self) -> None:
        assert hash_password("pw12345678") != hash_password("pw12345678")

    def test_legacy_pbkdf2(self) -> None:
        hashed = legacy_hash("pw12345678")
        assert verify_password("pw12345678", hashed)
        assert not verify_password("wrong-password", hashed)
        assert needs_rehash(hashed)

    def test_malformed_hash_never_raises(self) -> None:
        assert verify_password("pw12345678", "$2b$not-a-real-hash") is False


class TestAuthenticate:
    def test_unknown_email(self, store) -> None:
        assert authenticate_principal(store, "nobody@x.com", "pw12345678") is None

    def test_provider_only_account(self, store) -> None:
        store.create_principal("g@x.com")
        assert authenticate_principal(store, "g@x.com", "pw12345678") is None

    def test_inactive_account(self, store) -> None:
        principal = store.create_principal("a@x.com", password_hash=hash_password("pw12345678"))
        store.update_principal(principal.id, is_active=False)
        assert authenticate_principal(store, "a@x.com", "pw12345678") is None

    def test_legacy_hash_upgraded_on_login(self, store, flow: AuthorizationFlowManager) -> None:
        principal = store.create_principal("old@x.com", password_hash=legacy_hash("pw12345678"))
        flow.login_with_password("old@x.com", "pw12345678")
        upgraded = store.get_principal(principal.id).password_hash
        assert upgraded.startswith("$2")
        assert verify_password("pw12345678", upgraded)
