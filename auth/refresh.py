"""
auth/refresh.py -- Refresh-token issuance, validation and revocation.

A refresh token is a 256-bit random secret handed to the client once (on a
"remember me" login) and exchanged later for a fresh access token without a
password. Only HMAC digests are stored (see auth/tokens.py).

Rules:
  - Lifetime is fixed at issue time (30 days by default); no sliding expiry.
  - An expired record is invalid even if it has not been pruned yet.
  - Any number of concurrent tokens per account is allowed (one per device).
    MAX_REFRESH_TOKENS_PER_ACCOUNT > 0 opts into trimming the oldest.
  - Expired rows are pruned opportunistically whenever the list is read.
  - source_ip / device_info are recorded for the device listing only; they
    are not checked on validation.

Raw tokens are never logged. Log lines carry the 8-char prefix.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.models import RefreshTokenRecord
from auth.store import AccountStore
from auth.tokens import generate_refresh_token, hash_refresh_token, token_prefix

logger = logging.getLogger("invoicer.auth.refresh")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshTokenManager:
    """Issues, validates and revokes refresh tokens bound to an account."""

    def __init__(
        self,
        store: AccountStore,
        lifetime_seconds: int = 30 * 24 * 60 * 60,
        max_per_account: int = 0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.lifetime = timedelta(seconds=lifetime_seconds)
        self.max_per_account = max_per_account
        self._clock = clock

    def issue(self, account_id: int, device_info: str = "unknown", source_ip: str = "unknown") -> str:
        """Create and persist a new token for account_id. Returns the raw token."""
        raw = generate_refresh_token()
        record = self._new_record(account_id, raw, device_info, source_ip)
        self.store.add_refresh_token(record)
        if self.max_per_account > 0:
            trimmed = self.store.trim_refresh_tokens(account_id, self.max_per_account)
            if trimmed:
                logger.info("Trimmed %d oldest refresh token(s) for account %s", trimmed, account_id)
        logger.info(
            "Issued refresh token %s... for account %s (expires %s)",
            record.token_prefix,
            account_id,
            record.expires_at.isoformat(),
        )
        return raw

    def validate(self, account_id: int, token: str | None) -> bool:
        """True iff a matching, unexpired record exists for this account."""
        return self._find_valid(token, account_id) is not None

    def lookup(self, token: str | None) -> RefreshTokenRecord | None:
        """Return the valid record for a raw token regardless of owner, or None."""
        return self._find_valid(token)

    def revoke(self, account_id: int, token: str | None) -> bool:
        """Remove a token. Idempotent: returns False if nothing matched."""
        if not token:
            return False
        removed = self.store.delete_refresh_token(account_id, hash_refresh_token(token))
        if removed:
            logger.info("Revoked refresh token %s... for account %s", token_prefix(token), account_id)
        return removed

    def revoke_all(self, account_id: int) -> int:
        """Remove every token for an account ("sign out everywhere")."""
        count = self.store.delete_refresh_tokens(account_id)
        logger.info("Revoked %d refresh token(s) for account %s", count, account_id)
        return count

    def rotate(self, account_id: int, token: str) -> str | None:
        """Atomically replace a valid token with a new one. Returns the new raw token.

        The successor keeps the device metadata of the token it replaces and
        gets a fresh lifetime. Returns None when the old token is invalid or
        was rotated concurrently.
        """
        current = self._find_valid(token, account_id)
        if current is None:
            return None
        raw = generate_refresh_token()
        record = self._new_record(account_id, raw, current.device_info, current.source_ip)
        if not self.store.replace_refresh_token(account_id, current.token_hash, record):
            return None
        logger.info(
            "Rotated refresh token %s... -> %s... for account %s",
            current.token_prefix,
            record.token_prefix,
            account_id,
        )
        return raw

    def list_active(self, account_id: int) -> list[RefreshTokenRecord]:
        """Prune expired records, then return the remaining ones oldest first."""
        now = self._clock()
        pruned = self.store.prune_expired_refresh_tokens(account_id, now)
        if pruned:
            logger.debug("Pruned %d expired refresh token(s) for account %s", pruned, account_id)
        return [r for r in self.store.get_refresh_tokens(account_id) if r.expires_at > now]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _new_record(self, account_id: int, raw: str, device_info: str, source_ip: str) -> RefreshTokenRecord:
        now = self._clock()
        return RefreshTokenRecord(
            account_id=account_id,
            token_hash=hash_refresh_token(raw),
            token_prefix=token_prefix(raw),
            expires_at=now + self.lifetime,
            device_info=device_info or "unknown",
            source_ip=source_ip or "unknown",
            created_at=now,
        )

    def _find_valid(self, token: str | None, account_id: int | None = None) -> RefreshTokenRecord | None:
        if not token:
            return None
        record = self.store.find_refresh_token(hash_refresh_token(token))
        if record is None:
            return None
        if account_id is not None and record.account_id != account_id:
            return None
        if record.expires_at <= self._clock():
            # Stale row: invalid now, delete it while we are here.
            self.store.delete_refresh_token(record.account_id, record.token_hash)
            return None
        return record
