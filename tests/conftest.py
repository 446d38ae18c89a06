"""
tests/conftest.py -- Shared test fixtures for the Invoicer auth tests.

This module provides:
  - FakeClock: a settable clock injected into every time-dependent component
  - store: a temp-file AccountStore per test
  - make_account: factory for password accounts with a known password
  - issuer: a SessionIssuer wired to store + FakeClock with default policy
  - api_client: TestClient with a patched lifespan for API integration tests

Design: temp-file SQLite URLs (not :memory:) are used because the
concurrency tests and TestClient both run code on worker threads, and a
plain :memory: database is private to the connection that created it.

DEBUG must be set before any auth/core import so get_settings() can
auto-generate SECRET_KEY in dev mode instead of raising ValueError.
BCRYPT_ROUNDS is lowered for the same reason it is lowered everywhere
tests hash passwords: cost 12 would make the suite take minutes.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: Set environment before any auth/core import -- get_settings() is
# cached at first call and several modules read it at import time.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("API_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("TRUST_FORWARDED_FOR", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.lockout import AccountLockoutTracker
from auth.models import Account, CallerContext
from auth.rate_limit import RateLimiter
from auth.refresh import RefreshTokenManager
from auth.session import SessionIssuer, build_session_issuer
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import get_settings

PASSWORD = "Corr3ct-Horse!"
T0 = datetime(2026, 1, 15, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def caller() -> CallerContext:
    return CallerContext(ip="203.0.113.7", user_agent="pytest-browser/1.0")


@pytest.fixture
def store(tmp_path) -> Generator[AccountStore, None, None]:
    s = AccountStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


@pytest.fixture
def make_account(store: AccountStore) -> Callable[..., Account]:
    """Return a factory that inserts an account and returns the stored row."""

    def _make(email: str = "owner@example.com", password: str | None = PASSWORD, name: str = "Owner") -> Account:
        password_hash = hash_password(password) if password is not None else None
        account_id = store.create_account(Account(email=email, name=name, password_hash=password_hash))
        return store.get_by_id(account_id)

    return _make


@pytest.fixture
def issuer(store: AccountStore, clock: FakeClock) -> SessionIssuer:
    """SessionIssuer with default policy: 5 failures -> 30 min lock, 5 logins / 15 min per IP."""
    return SessionIssuer(
        store,
        RateLimiter(5, 15 * 60, clock=clock),
        AccountLockoutTracker(store, threshold=5, lock_duration_seconds=30 * 60, clock=clock),
        RefreshTokenManager(store, lifetime_seconds=30 * 24 * 60 * 60, clock=clock),
        access_token_seconds=30 * 24 * 60 * 60,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore):
    """Return an async context manager that replaces the real lifespan.

    Wires a test store and a freshly built SessionIssuer into app.state so
    TestClient routes see an isolated database. The OAuth registry is mocked
    to prevent real network calls.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = store
        app.state.session_issuer = build_session_issuer(store, get_settings())
        app.state.oauth = MagicMock()
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, AccountStore], None, None]:
    """Yield (client, store) for API integration tests.

    One client per test module. Login tests send a distinct X-Forwarded-For
    per test so the per-IP login limiter never carries over between them.
    """
    db_path = tmp_path_factory.mktemp("api") / "auth.db"
    store = AccountStore(f"sqlite:///{db_path}")
    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store

    store.close()
