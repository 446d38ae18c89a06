"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth/* endpoints.

Covers:
  - POST /login: 200 with cookie + no-store; 401 bad_credentials for unknown
    email and wrong password alike; 423 account_locked after 5 failures
  - POST /login: 429 rate_limited with Retry-After on the 6th attempt per IP
  - POST /login remember_me: refresh token returned once, listed by prefix
  - POST /refresh and POST /renew
  - POST /logout revokes the session's refresh token and clears the cookie
  - GET /me, /sessions, /login-attempts require auth
  - POST /signup: 201, 400 weak_password, 409 conflict
  - GET /providers: empty when OAuth is unconfigured
  - 422 validation errors never echo the submitted input
  - Passwords over bcrypt's 72-byte limit are a 422, never a 500
"""

from __future__ import annotations

import itertools

import pytest

from auth.models import Account
from auth.tokens import hash_password

PASSWORD = "Corr3ct-Horse!"

_ip_counter = itertools.count(1)


def _fresh_ip() -> dict[str, str]:
    """A distinct client address per call so the per-IP login limiter never carries over."""
    return {"X-Forwarded-For": f"192.0.2.{next(_ip_counter)}"}


@pytest.fixture(scope="module")
def account(api_client) -> Account:
    _, store = api_client
    account_id = store.create_account(
        Account(email="api-owner@example.com", name="API Owner", password_hash=hash_password(PASSWORD))
    )
    return store.get_by_id(account_id)


def _login(client, email, password, remember_me=False, headers=None):
    return client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password, "remember_me": remember_me},
        headers=headers or _fresh_ip(),
    )


class TestLogin:
    def test_login_success_sets_cookie_and_no_store(self, api_client, account):
        client, _ = api_client
        resp = _login(client, account.email, PASSWORD)
        assert resp.status_code == 200
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["refresh_token"] is None
        assert data["account"]["email"] == account.email
        assert data["account"]["has_password"] is True
        assert "password_hash" not in data["account"]
        assert resp.headers["cache-control"] == "no-store"
        assert "access_token=" in resp.headers["set-cookie"]
        assert "httponly" in resp.headers["set-cookie"].lower()

    def test_unknown_email_and_wrong_password_are_identical(self, api_client, account):
        client, _ = api_client
        unknown = _login(client, "ghost@example.com", PASSWORD)
        wrong = _login(client, account.email, "not-the-password")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert unknown.json()["error"]["code"] == "bad_credentials"
        assert wrong.headers["cache-control"] == "no-store"

    def test_rate_limited_after_five_attempts_from_one_ip(self, api_client):
        client, _ = api_client
        headers = _fresh_ip()
        for _ in range(5):
            assert _login(client, "ghost@example.com", "x", headers=headers).status_code == 401
        resp = _login(client, "ghost@example.com", "x", headers=headers)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["retry-after"]) > 0

    def test_lockout_after_five_failures(self, api_client):
        client, store = api_client
        store.create_account(Account(email="lockme@example.com", password_hash=hash_password(PASSWORD)))
        codes = [_login(client, "lockme@example.com", "nope").json()["error"]["code"] for _ in range(5)]
        assert codes == ["bad_credentials"] * 4 + ["account_locked"]

        resp = _login(client, "lockme@example.com", PASSWORD)
        assert resp.status_code == 423
        body = resp.json()["error"]
        assert body["code"] == "account_locked"
        assert body["detail"]["remaining_minutes"] == 30

    def test_oversized_password_is_rejected_without_echo(self, api_client):
        client, _ = api_client
        secret = "S" * 200
        resp = client.post("/api/v1/auth/login", json={"email": "a@example.com", "password": secret}, headers=_fresh_ip())
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert secret not in resp.text

    @pytest.mark.parametrize("email", ["api-owner@example.com", "nobody@example.com"])
    def test_password_over_72_bytes_is_422_for_any_email(self, api_client, account, email):
        client, _ = api_client
        resp = _login(client, email, "Aa1!" + "x" * 80)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestRememberMe:
    def test_refresh_token_issued_and_listed_by_prefix(self, api_client, account):
        client, _ = api_client
        resp = _login(client, account.email, PASSWORD, remember_me=True)
        refresh_token = resp.json()["refresh_token"]
        assert refresh_token and len(refresh_token) == 64

        sessions = client.get("/api/v1/auth/sessions", headers={"Authorization": f"Bearer {resp.json()['access_token']}"})
        assert sessions.status_code == 200
        prefixes = [s["token_prefix"] for s in sessions.json()]
        assert refresh_token[:8] in prefixes
        assert refresh_token not in sessions.text

    def test_refresh_exchange(self, api_client, account):
        client, _ = api_client
        refresh_token = _login(client, account.email, PASSWORD, remember_me=True).json()["refresh_token"]
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert resp.status_code == 200
        assert resp.json()["account"]["id"] == account.id
        assert resp.headers["cache-control"] == "no-store"

    def test_refresh_with_unknown_token_is_401(self, api_client):
        client, _ = api_client
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "0" * 64})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_expired"

    def test_renew_unexpired_token_is_unchanged(self, api_client, account):
        client, _ = api_client
        token = _login(client, account.email, PASSWORD).json()["access_token"]
        resp = client.post("/api/v1/auth/renew", json={"access_token": token})
        assert resp.status_code == 200
        assert resp.json() == {"access_token": token, "renewed": False}

    def test_renew_garbage_is_401(self, api_client):
        client, _ = api_client
        resp = client.post("/api/v1/auth/renew", json={"access_token": "garbage"})
        assert resp.status_code == 401


class TestAuthenticatedRoutes:
    def test_me_requires_auth(self, api_client):
        client, _ = api_client
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_with_bearer(self, api_client, account):
        client, _ = api_client
        token = _login(client, account.email, PASSWORD).json()["access_token"]
        client.cookies.clear()
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["email"] == account.email

    def test_login_attempts_history(self, api_client, account):
        client, _ = api_client
        _login(client, account.email, "wrong-once")
        token = _login(client, account.email, PASSWORD).json()["access_token"]
        resp = client.get("/api/v1/auth/login-attempts", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        attempts = resp.json()
        assert attempts[0]["succeeded"] is True
        assert attempts[1]["succeeded"] is False
        assert len(attempts) <= 10

    def test_logout_revokes_this_sessions_refresh_token(self, api_client, account):
        client, _ = api_client
        data = _login(client, account.email, PASSWORD, remember_me=True).json()
        headers = {"Authorization": f"Bearer {data['access_token']}"}

        resp = client.post("/api/v1/auth/logout", headers=headers)

        assert resp.status_code == 200
        assert resp.json()["revoked"] == 1
        assert 'access_token=""' in resp.headers["set-cookie"] or "Max-Age=0" in resp.headers["set-cookie"]
        again = client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert again.status_code == 401

    def test_logout_all_devices(self, api_client):
        client, store = api_client
        store.create_account(Account(email="many@example.com", password_hash=hash_password(PASSWORD)))
        tokens = [_login(client, "many@example.com", PASSWORD, remember_me=True).json() for _ in range(3)]
        headers = {"Authorization": f"Bearer {tokens[0]['access_token']}"}

        resp = client.post("/api/v1/auth/logout", json={"all_devices": True}, headers=headers)

        assert resp.json()["revoked"] == 3


class TestSignup:
    def test_signup_creates_account(self, api_client):
        client, _ = api_client
        resp = client.post(
            "/api/v1/auth/signup",
            json={"email": "new@example.com", "name": "New", "password": PASSWORD},
        )
        assert resp.status_code == 201
        assert resp.json()["email"] == "new@example.com"
        assert _login(client, "new@example.com", PASSWORD).status_code == 200

    def test_weak_password(self, api_client):
        client, _ = api_client
        resp = client.post(
            "/api/v1/auth/signup",
            json={"email": "weak@example.com", "name": "Weak", "password": "password"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "weak_password"
        assert resp.json()["error"]["detail"]["errors"]

    def test_password_over_72_bytes_is_rejected(self, api_client):
        client, store = api_client
        resp = client.post(
            "/api/v1/auth/signup",
            json={"email": "long@example.com", "name": "Long", "password": "Aa1!" + "é" * 36},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert store.get_by_email("long@example.com") is None

    def test_duplicate_email(self, api_client, account):
        client, _ = api_client
        resp = client.post(
            "/api/v1/auth/signup",
            json={"email": account.email.upper(), "name": "Dup", "password": PASSWORD},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"


def test_providers_empty_without_oauth_config(api_client):
    client, _ = api_client
    resp = client.get("/api/v1/auth/providers")
    assert resp.status_code == 200
    assert resp.json() == []
