"""
auth/rate_limit.py -- Fixed-window login rate limiter.

One counter per caller key (login uses "login-<ip>"). Windows are created
lazily on first use and reset to zero when their reset_at passes -- a fixed
window, not a sliding one.

State is process-local and owned by the RateLimiter instance: constructed once
in the app lifespan, never shared as a module global, and reachable only
through check(). Losing it on restart fails open. That is an accepted
tradeoff: this limiter slows down a single-instance brute-force run, it is
not a guarantee against distributed abuse. The per-account lockout in
auth/lockout.py is the durable guard.

Thread safety: check() holds a lock across read-check-write so concurrent
calls for one key cannot push the counter past the ceiling.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.models import RateLimitDecision

logger = logging.getLogger("invoicer.auth.rate_limit")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Window:
    count: int
    reset_at: datetime


class RateLimiter:
    """Fixed-window counter keyed by caller identity.

    Usage:
        limiter = RateLimiter(max_attempts=5, window_seconds=900)
        decision = limiter.check(f"login-{caller.ip}")
        if not decision.allowed:
            raise RateLimited(decision.retry_after_seconds)
    """

    def __init__(
        self,
        max_attempts: int,
        window_seconds: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_attempts < 1 or window_seconds < 1:
            raise ValueError("max_attempts and window_seconds must be positive")
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, _Window] = {}

    def check(self, key: str) -> RateLimitDecision:
        """Count one attempt for key and report whether it is within the ceiling.

        Denied calls do not increment the counter, so a caller hammering a
        closed window cannot extend it.
        """
        now = self._clock()
        with self._lock:
            self._sweep(now)
            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                window = _Window(count=0, reset_at=now + self.window)
                self._windows[key] = window

            if window.count >= self.max_attempts:
                return RateLimitDecision(allowed=False, remaining=0, reset_at=window.reset_at, now=now)

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=self.max_attempts - window.count,
                reset_at=window.reset_at,
                now=now,
            )

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or every key when called without arguments."""
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _sweep(self, now: datetime) -> None:
        # Amortized cleanup: runs on every check, no background task.
        expired = [k for k, w in self._windows.items() if w.reset_at <= now]
        for k in expired:
            del self._windows[k]
