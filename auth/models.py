"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store, the lockout tracker, the refresh manager and the
session issuer do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class RefreshTokenRecord:
    """A long-lived credential bound to one device/session of an account.

    Security design:
      The raw token (64 hex chars, 256 bits) is shown to the client once and
      never persisted. token_hash is HMAC-SHA256(SECRET_KEY, raw_token), which
      makes lookup O(1) and keeps a DB dump useless without the key.

      device_info / source_ip are best-effort and advisory only -- a token is
      valid from any IP.
    """

    account_id: int
    token_hash: str  # HMAC-SHA256 hex, unique across all accounts
    token_prefix: str  # first 8 chars of raw token, display/logging only
    expires_at: datetime
    device_info: str = "unknown"
    source_ip: str = "unknown"
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class Account:
    """Represents an invoicing tenant's login identity.

    password_hash is None for accounts created through an external identity
    provider -- they can never authenticate via the password path.

    version is bumped on every conditional write. Lockout transitions are
    compare-and-swap updates against it so concurrent failed logins can
    neither lose increments nor both skip the lock.
    """

    email: str
    name: str = ""
    id: int | None = None
    image: str | None = None
    password_hash: str | None = None  # None = external-identity-only account
    failed_attempt_count: int = 0
    locked_until: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None
    version: int = 0
    refresh_tokens: list[RefreshTokenRecord] = field(default_factory=list)


@dataclass
class LoginAttemptEvent:
    """One password login attempt against a known account."""

    account_id: int
    timestamp: datetime
    succeeded: bool
    source_ip: str = "unknown"
    device_info: str = "unknown"


@dataclass(frozen=True)
class CallerContext:
    """Caller identity extracted once at the transport boundary.

    The core never inspects request objects; route handlers build this value
    and pass it in explicitly.
    """

    ip: str = "unknown"
    user_agent: str = "unknown"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of RateLimiter.check() for one call."""

    allowed: bool
    remaining: int
    reset_at: datetime
    now: datetime

    @property
    def retry_after_seconds(self) -> int:
        return max(0, math.ceil((self.reset_at - self.now).total_seconds()))


@dataclass
class IssuedSession:
    """Tokens minted for a successful sign-in or refresh exchange."""

    account: Account
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


@dataclass
class SessionState:
    """Result of resolving an access token on an authenticated request."""

    account: Account
    access_token: str
    renewed: bool = False
