"""
auth/lockout.py -- Per-account brute-force lockout state machine.

Two states, derived entirely from the persisted Account row:

  Unlocked  locked_until is None, or locked_until <= now
  Locked    locked_until > now

Transitions:

  Unlocked + wrong password, count+1 <  threshold -> Unlocked, count += 1
  Unlocked + wrong password, count+1 >= threshold -> Locked, locked_until = now + duration
  Locked   + any attempt, now <  locked_until     -> Locked, AccountLocked raised,
                                                     password is NOT verified
  Locked   + any attempt, now >= locked_until     -> Unlocked, count = 0, then the
                                                     attempt is evaluated fresh
  Unlocked + correct password                     -> Unlocked, count = 0

Concurrency:
  Every transition is a compare-and-swap through AccountStore.conditional_update.
  On a version conflict the tracker re-reads the account and re-runs the
  transition from the new state. Two racing failures therefore both count,
  and once one of them locks the account the other observes the lock and is
  rejected instead of incrementing past the threshold.

Durability:
  Each transition is committed before the method returns, so the caller never
  reports a result the database does not already reflect.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from auth.errors import AccountLocked, InvalidCredentials, StorageUnavailable
from auth.models import Account, CallerContext, LoginAttemptEvent
from auth.store import AccountStore

logger = logging.getLogger("invoicer.auth.lockout")

# Upper bound on CAS retries for one attempt. Each conflict means another
# writer succeeded, and after `threshold` successful failures the account is
# locked and every racer exits, so this is never reached in practice.
_MAX_CAS_RETRIES = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountLockoutTracker:
    """Records login outcomes against an account and computes its lock status."""

    def __init__(
        self,
        store: AccountStore,
        threshold: int = 5,
        lock_duration_seconds: int = 30 * 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.lock_duration = timedelta(seconds=lock_duration_seconds)
        self._clock = clock

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_locked(self, account: Account, now: datetime | None = None) -> bool:
        now = now or self._clock()
        return account.locked_until is not None and now < account.locked_until

    def remaining_lock_minutes(self, account: Account, now: datetime | None = None) -> int:
        """ceil((locked_until - now) / 1 minute); 0 when not locked."""
        now = now or self._clock()
        if not self.is_locked(account, now):
            return 0
        return math.ceil((account.locked_until - now).total_seconds() / 60)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def ensure_unlocked(self, account: Account) -> Account:
        """Gate an attempt on lock status before any password work happens.

        Raises AccountLocked while the lock is in effect. An expired lock is
        cleared (count and locked_until reset) and the refreshed account is
        returned so the attempt is evaluated as a fresh Unlocked one.
        """
        for _ in range(_MAX_CAS_RETRIES):
            now = self._clock()
            if account.locked_until is None:
                return account
            if now < account.locked_until:
                raise AccountLocked(self.remaining_lock_minutes(account, now))
            if self.store.conditional_update(account.id, account.version, failed_attempt_count=0, locked_until=None):
                logger.info("Lock expired for account %s; lockout state cleared", account.id)
            account = self._reload(account.id)
        raise StorageUnavailable("Account update contention; try again.")

    def record_failure(self, account: Account, caller: CallerContext) -> Account:
        """Count a verified-wrong password against an unlocked account.

        Returns the account as this attempt wrote it, not a fresh read, so
        is_locked() on the result is True only when this attempt set the lock.
        A lock set by a racing attempt afterwards does not change the outcome.
        """
        for _ in range(_MAX_CAS_RETRIES):
            account = self.ensure_unlocked(account)
            now = self._clock()
            new_count = account.failed_attempt_count + 1
            fields: dict = {"failed_attempt_count": new_count}
            locking = new_count >= self.threshold
            if locking:
                fields["locked_until"] = now + self.lock_duration
            if self.store.conditional_update(account.id, account.version, **fields):
                self._record_attempt(account.id, now, caller, succeeded=False)
                if locking:
                    logger.warning(
                        "Account %s locked until %s after %d failed attempts (last from %s)",
                        account.id,
                        fields["locked_until"].isoformat(),
                        new_count,
                        caller.ip,
                    )
                else:
                    logger.info("Failed login for account %s (%d/%d)", account.id, new_count, self.threshold)
                return replace(account, version=account.version + 1, **fields)
            account = self._reload(account.id)
        raise StorageUnavailable("Account update contention; try again.")

    def record_success(self, account: Account, caller: CallerContext) -> Account:
        """Reset failure state after a verified-correct password.

        If a concurrent request locked the account between verification and
        this write, the lock wins and AccountLocked is raised.
        """
        for _ in range(_MAX_CAS_RETRIES):
            now = self._clock()
            if self.is_locked(account, now):
                raise AccountLocked(self.remaining_lock_minutes(account, now))
            if self.store.conditional_update(
                account.id,
                account.version,
                failed_attempt_count=0,
                locked_until=None,
                last_login=now,
            ):
                self._record_attempt(account.id, now, caller, succeeded=True)
                return self._reload(account.id)
            account = self._reload(account.id)
        raise StorageUnavailable("Account update contention; try again.")

    def unlock(self, account_id: int) -> Account:
        """Operator override: clear the lock and failure count immediately."""
        account = self._reload(account_id)
        for _ in range(_MAX_CAS_RETRIES):
            if self.store.conditional_update(account.id, account.version, failed_attempt_count=0, locked_until=None):
                logger.warning("Account %s unlocked by operator", account.id)
                return self._reload(account.id)
            account = self._reload(account.id)
        raise StorageUnavailable("Account update contention; try again.")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _reload(self, account_id: int) -> Account:
        account = self.store.get_by_id(account_id)
        if account is None:
            # Deleted mid-attempt; indistinguishable from an unknown email.
            raise InvalidCredentials()
        return account

    def _record_attempt(self, account_id: int, now: datetime, caller: CallerContext, succeeded: bool) -> None:
        self.store.add_login_attempt(
            LoginAttemptEvent(
                account_id=account_id,
                timestamp=now,
                succeeded=succeeded,
                source_ip=caller.ip,
                device_info=caller.user_agent,
            )
        )
