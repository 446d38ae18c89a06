"""Unit tests for auth/tokens.py -- credential verification and token helpers.

Covers:
- verify_password() matches only the right password
- Accounts without a hash always fail, and malformed hashes fail closed
- Passwords over 72 bytes fail closed instead of raising from bcrypt
- Access tokens round-trip claims; tampered tokens decode to None
- Expiry is enforced unless the caller opts out (renewal inspection)
- Refresh-token digest is deterministic, keyed, and never equals the raw token
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.tokens import (
    burn_password_check,
    create_access_token,
    decode_access_token,
    generate_refresh_token,
    hash_password,
    hash_refresh_token,
    token_prefix,
    verify_password,
)


class TestPasswords:
    def test_correct_password_verifies(self):
        hashed = hash_password("s3cret!Pass")
        assert hashed != "s3cret!Pass"
        assert verify_password("s3cret!Pass", hashed)

    def test_wrong_password_fails(self):
        assert not verify_password("nope", hash_password("s3cret!Pass"))

    def test_missing_hash_always_fails(self):
        assert not verify_password("anything", None)
        assert not verify_password("", "")

    def test_malformed_hash_fails_closed(self):
        assert not verify_password("anything", "not-a-bcrypt-hash")

    def test_password_over_72_bytes_fails_closed(self):
        long = "Aa1!" + "x" * 80
        assert not verify_password(long, hash_password(long[:72]))
        assert not verify_password(long, None)
        burn_password_check(long)

    def test_hash_password_refuses_over_72_bytes(self):
        with pytest.raises(ValueError):
            hash_password("é" * 37)


class TestAccessTokens:
    def test_claims_round_trip(self):
        now = datetime.now(timezone.utc)
        token, expires_at = create_access_token(7, "a@example.com", refresh_token="r" * 64, now=now, expire_seconds=60)
        payload = decode_access_token(token)
        assert payload["account_id"] == 7
        assert payload["sub"] == "a@example.com"
        assert payload["rt"] == "r" * 64
        assert payload["exp"] == int(expires_at.timestamp())
        assert expires_at == now + timedelta(seconds=60)

    def test_expired_token_rejected_unless_inspecting(self):
        past = datetime.now(timezone.utc) - timedelta(days=2)
        token, _ = create_access_token(7, "a@example.com", now=past, expire_seconds=3600)
        assert decode_access_token(token) is None
        assert decode_access_token(token, verify_exp=False)["account_id"] == 7

    def test_tampered_token_rejected(self):
        token, _ = create_access_token(7, "a@example.com", expire_seconds=60)
        header, body, signature = token.split(".")
        forged = ".".join([header, body, signature[::-1]])
        assert decode_access_token(forged) is None
        assert decode_access_token(forged, verify_exp=False) is None

    def test_garbage_rejected(self):
        assert decode_access_token("garbage") is None


class TestRefreshTokenHelpers:
    def test_generated_tokens_are_unique_hex(self):
        tokens = {generate_refresh_token() for _ in range(50)}
        assert len(tokens) == 50
        assert all(len(t) == 64 for t in tokens)
        int(next(iter(tokens)), 16)

    def test_digest_is_deterministic_and_not_the_token(self):
        raw = generate_refresh_token()
        assert hash_refresh_token(raw) == hash_refresh_token(raw)
        assert hash_refresh_token(raw) != raw
        assert hash_refresh_token(raw) != hash_refresh_token(generate_refresh_token())

    def test_prefix_is_eight_chars(self):
        assert token_prefix("abcdef0123456789") == "abcdef01"
