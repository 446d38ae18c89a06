"""
auth/session.py -- Sign-in orchestration and silent session renewal.

SessionIssuer is the only entry point route handlers call. It wires the
other components together in a fixed order:

  authenticate()
    1. RateLimiter.check("login-<ip>")       -- before any account lookup
    2. AccountStore.get_by_email()           -- unknown email: burn a bcrypt
                                                check, then InvalidCredentials
    3. AccountLockoutTracker.ensure_unlocked -- locked: AccountLocked, the
                                                password is never verified
    4. verify_password()                     -- bcrypt, constant time
    5. record_failure() / record_success()   -- persisted before returning
    6. RefreshTokenManager.issue()           -- only when remember_me is set
    7. create_access_token()

  renew_session()
    unexpired access token            -> returned unchanged
    expired + valid refresh reference -> new access token, same refresh token
                                         (or a rotated one, see below)
    expired + invalid/no reference    -> RenewalFailed; caller re-authenticates
    account no longer exists          -> RenewalFailed; its refresh tokens are revoked

Refresh-token rotation on renewal is off by default (ROTATE_REFRESH_TOKENS).
Without it, a stolen refresh token stays usable until its fixed expiry or an
explicit logout. With it, each renewal atomically replaces the token.

External-identity sign-in skips steps 1-5 entirely: the provider already
verified the person, and the account it maps to has no password hash.

Layer rule: no imports from api/. Request objects never reach this module;
callers pass a CallerContext.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from auth.errors import AccountExists, AccountLocked, InvalidCredentials, RateLimited, RenewalFailed, WeakPassword
from auth.lockout import AccountLockoutTracker
from auth.models import Account, CallerContext, IssuedSession, SessionState
from auth.password_policy import validate_password
from auth.rate_limit import RateLimiter
from auth.refresh import RefreshTokenManager
from auth.store import AccountStore, normalize_email
from auth.tokens import burn_password_check, create_access_token, decode_access_token, hash_password, verify_password
from core.config import get_settings

logger = logging.getLogger("invoicer.auth.session")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionIssuer:
    """Mints and renews access tokens on top of the lockout and refresh components."""

    def __init__(
        self,
        store: AccountStore,
        rate_limiter: RateLimiter,
        lockout: AccountLockoutTracker,
        refresh_tokens: RefreshTokenManager,
        *,
        enforce_rate_limit: bool = True,
        rotate_refresh_tokens: bool = False,
        access_token_seconds: int = 0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.lockout = lockout
        self.refresh_tokens = refresh_tokens
        self.enforce_rate_limit = enforce_rate_limit
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.access_token_seconds = access_token_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Password sign-in
    # ------------------------------------------------------------------

    def authenticate(
        self,
        email: str,
        password: str,
        remember_me: bool,
        caller: CallerContext,
    ) -> IssuedSession:
        """Verify email/password and mint a session.

        Raises RateLimited, InvalidCredentials, AccountLocked or
        StorageUnavailable. Wrong password and unknown email raise the same
        InvalidCredentials.
        """
        decision = self.rate_limiter.check(f"login-{caller.ip}")
        if not decision.allowed:
            if self.enforce_rate_limit:
                logger.warning("Login rate limit exceeded for %s", caller.ip)
                raise RateLimited(decision.retry_after_seconds)
            logger.warning("Login rate limit exceeded for %s (advisory mode, continuing)", caller.ip)

        account = self.store.get_by_email(email)
        if account is None:
            burn_password_check(password)
            raise InvalidCredentials()

        account = self.lockout.ensure_unlocked(account)

        if not account.password_hash:
            # External-identity account: unreachable through the password path,
            # and not a verified-wrong password, so nothing is counted.
            burn_password_check(password)
            raise InvalidCredentials()

        if not verify_password(password, account.password_hash):
            account = self.lockout.record_failure(account, caller)
            if self.lockout.is_locked(account):
                raise AccountLocked(self.lockout.remaining_lock_minutes(account))
            raise InvalidCredentials()

        account = self.lockout.record_success(account, caller)
        logger.info("Account %s signed in from %s (remember_me=%s)", account.id, caller.ip, remember_me)
        return self.issue_for_account(account, remember_me, caller)

    def issue_for_account(self, account: Account, remember_me: bool, caller: CallerContext) -> IssuedSession:
        """Mint an access token (and a refresh token when remember_me) for a verified account."""
        refresh_token = None
        if remember_me:
            refresh_token = self.refresh_tokens.issue(account.id, caller.user_agent, caller.ip)
        access_token, expires_at = self._mint(account.id, account.email, refresh_token)
        return IssuedSession(
            account=account,
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=refresh_token,
        )

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    def renew_session(self, access_token: str) -> str:
        """Return a usable access token for this session or raise RenewalFailed."""
        token, _account, _renewed = self._renew(access_token)
        return token

    def resolve(self, access_token: str) -> SessionState:
        """Per-request entry point: renew if needed, then load the account."""
        token, account, renewed = self._renew(access_token)
        return SessionState(account=account, access_token=token, renewed=renewed)

    def refresh(self, refresh_token: str) -> IssuedSession:
        """Exchange a raw refresh token for a new access token.

        The refresh token returned is the same one unless rotation is on.
        """
        record = self.refresh_tokens.lookup(refresh_token)
        if record is None:
            raise RenewalFailed("Invalid or expired refresh token.")
        account = self.store.get_by_id(record.account_id)
        if account is None:
            raise RenewalFailed("Invalid or expired refresh token.")
        if self.rotate_refresh_tokens:
            refresh_token = self.refresh_tokens.rotate(account.id, refresh_token)
            if refresh_token is None:
                raise RenewalFailed("Invalid or expired refresh token.")
        access_token, expires_at = self._mint(account.id, account.email, refresh_token)
        return IssuedSession(
            account=account,
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=refresh_token,
        )

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    def sign_in_external(self, verified_email: str, name: str | None, avatar_url: str | None) -> Account:
        """Map an identity the provider already verified onto an Account.

        Matches by email; creates a password-less account on first sign-in.
        The provider's name/avatar overwrite stored values when present.
        """
        email = normalize_email(verified_email)
        account = self.store.get_by_email(email)
        if account is None:
            try:
                self.store.create_account(Account(email=email, name=name or email, image=avatar_url))
                logger.info("Created external-identity account for %s", email)
            except IntegrityError:
                # A concurrent first sign-in created it; fall through to the lookup.
                logger.info("External-identity account for %s created concurrently", email)
            account = self.store.get_by_email(email)
            if account is None:
                raise InvalidCredentials()
        self.store.update_profile(
            account.id,
            name=name or account.name,
            image=avatar_url or account.image,
            last_login=self._clock(),
        )
        return self.store.get_by_id(account.id)

    def sign_up(self, email: str, name: str, password: str) -> Account:
        """Create a local account after enforcing the password policy."""
        result = validate_password(password)
        if not result.is_valid:
            raise WeakPassword(result.errors)
        try:
            account_id = self.store.create_account(
                Account(email=email, name=name, password_hash=hash_password(password))
            )
        except IntegrityError as exc:
            raise AccountExists() from exc
        logger.info("Created local account %s", account_id)
        return self.store.get_by_id(account_id)

    def logout(self, account_id: int, refresh_token: str | None = None, all_devices: bool = False) -> int:
        """Revoke one refresh token, or all of them. Returns how many were removed."""
        if all_devices:
            return self.refresh_tokens.revoke_all(account_id)
        if refresh_token:
            return 1 if self.refresh_tokens.revoke(account_id, refresh_token) else 0
        return 0

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _mint(self, account_id: int, email: str, refresh_token: str | None) -> tuple[str, datetime]:
        return create_access_token(
            account_id,
            email,
            refresh_token=refresh_token,
            now=self._clock(),
            expire_seconds=self.access_token_seconds,
        )

    def _renew(self, access_token: str) -> tuple[str, Account, bool]:
        payload = decode_access_token(access_token, verify_exp=False)
        if payload is None:
            raise RenewalFailed("Invalid session token.")

        account_id = payload["account_id"]
        account = self.store.get_by_id(account_id)
        if account is None:
            # Account removed; its refresh tokens must not outlive it.
            self.refresh_tokens.revoke_all(account_id)
            logger.info("Session renewal refused: account %s no longer exists", account_id)
            raise RenewalFailed()

        now = self._clock()
        if payload["exp"] > now.timestamp():
            return access_token, account, False

        refresh_token = payload.get("rt")
        if not refresh_token:
            raise RenewalFailed()

        if not self.refresh_tokens.validate(account_id, refresh_token):
            # Drop the dangling reference so it can never be retried.
            self.refresh_tokens.revoke(account_id, refresh_token)
            logger.info("Session renewal refused for account %s: refresh token invalid", account_id)
            raise RenewalFailed()

        if self.rotate_refresh_tokens:
            refresh_token = self.refresh_tokens.rotate(account_id, refresh_token)
            if refresh_token is None:
                raise RenewalFailed()

        new_token, _expires_at = self._mint(account.id, account.email, refresh_token)
        logger.info("Session renewed for account %s", account_id)
        return new_token, account, True


def build_session_issuer(store: AccountStore, settings=None, clock: Callable[[], datetime] = _utcnow) -> SessionIssuer:
    """Wire a SessionIssuer and its collaborators from Settings.

    Used by the API lifespan and the operator CLI so both enforce the same
    lockout, rate-limit and refresh policy.
    """
    if settings is None:
        settings = get_settings()
    rate_limiter = RateLimiter(
        settings.login_rate_limit_max_attempts,
        settings.login_rate_limit_window_seconds,
        clock=clock,
    )
    lockout = AccountLockoutTracker(
        store,
        threshold=settings.lockout_threshold,
        lock_duration_seconds=settings.lockout_duration_seconds,
        clock=clock,
    )
    refresh_tokens = RefreshTokenManager(
        store,
        lifetime_seconds=settings.refresh_token_expire_seconds,
        max_per_account=settings.max_refresh_tokens_per_account,
        clock=clock,
    )
    return SessionIssuer(
        store,
        rate_limiter,
        lockout,
        refresh_tokens,
        enforce_rate_limit=settings.login_rate_limit_enforced,
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
        access_token_seconds=settings.access_token_expire_seconds,
        clock=clock,
    )
