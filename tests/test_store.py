"""Unit tests for auth/store.py -- AccountStore persistence.

Covers:
- create_account() normalizes email and rejects duplicates with IntegrityError
- conditional_update() succeeds only against the current version and bumps it
- conditional_update() refuses columns outside the mutable set
- replace_refresh_token() is all-or-nothing
- Database failures surface as StorageUnavailable
- ping() reports reachability
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.errors import StorageUnavailable
from auth.models import Account, RefreshTokenRecord
from auth.store import AccountStore


def _record(account_id: int, token_hash: str) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        account_id=account_id,
        token_hash=token_hash,
        token_prefix=token_hash[:8],
        expires_at=datetime.now(timezone.utc) + timedelta(days=30),
    )


class TestAccounts:
    def test_create_and_read_back(self, store: AccountStore):
        account_id = store.create_account(Account(email="  Mixed@Case.COM ", name="Mixed"))
        account = store.get_by_email("mixed@case.com")
        assert account.id == account_id
        assert account.email == "mixed@case.com"
        assert account.failed_attempt_count == 0
        assert account.version == 0
        assert account.created_at is not None
        assert store.get_by_id(account_id).email == "mixed@case.com"

    def test_duplicate_email_raises_integrity_error(self, store: AccountStore):
        store.create_account(Account(email="dup@example.com"))
        with pytest.raises(IntegrityError):
            store.create_account(Account(email="DUP@example.com"))

    def test_missing_account_is_none(self, store: AccountStore):
        assert store.get_by_email("ghost@example.com") is None
        assert store.get_by_id(9999) is None


class TestConditionalUpdate:
    def test_applies_against_current_version(self, store: AccountStore):
        account_id = store.create_account(Account(email="cas@example.com"))
        until = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        assert store.conditional_update(account_id, 0, failed_attempt_count=5, locked_until=until)

        account = store.get_by_id(account_id)
        assert account.version == 1
        assert account.failed_attempt_count == 5
        assert account.locked_until == until

    def test_stale_version_is_rejected(self, store: AccountStore):
        account_id = store.create_account(Account(email="cas@example.com"))
        assert store.conditional_update(account_id, 0, failed_attempt_count=1)
        assert not store.conditional_update(account_id, 0, failed_attempt_count=99)
        assert store.get_by_id(account_id).failed_attempt_count == 1

    def test_identity_columns_are_not_writable(self, store: AccountStore):
        account_id = store.create_account(Account(email="cas@example.com"))
        with pytest.raises(ValueError):
            store.conditional_update(account_id, 0, email="other@example.com")
        with pytest.raises(ValueError):
            store.update_profile(account_id, failed_attempt_count=0)


class TestRefreshTokenRows:
    def test_replace_swaps_atomically(self, store: AccountStore):
        account_id = store.create_account(Account(email="rt@example.com"))
        store.add_refresh_token(_record(account_id, "a" * 64))

        assert store.replace_refresh_token(account_id, "a" * 64, _record(account_id, "b" * 64))

        assert [r.token_hash for r in store.get_refresh_tokens(account_id)] == ["b" * 64]

    def test_replace_of_missing_token_writes_nothing(self, store: AccountStore):
        account_id = store.create_account(Account(email="rt@example.com"))
        assert not store.replace_refresh_token(account_id, "a" * 64, _record(account_id, "b" * 64))
        assert store.get_refresh_tokens(account_id) == []

    def test_find_is_global_delete_is_scoped(self, store: AccountStore):
        owner = store.create_account(Account(email="owner@example.com"))
        other = store.create_account(Account(email="other@example.com"))
        store.add_refresh_token(_record(owner, "c" * 64))
        assert store.find_refresh_token("c" * 64).account_id == owner
        assert not store.delete_refresh_token(other, "c" * 64)
        assert store.delete_refresh_token(owner, "c" * 64)


class TestFailures:
    def test_driver_error_becomes_storage_unavailable(self, store: AccountStore, monkeypatch):
        def _broken_connect():
            raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

        monkeypatch.setattr(store.engine, "connect", _broken_connect)
        with pytest.raises(StorageUnavailable):
            store.get_by_email("any@example.com")
        assert store.ping() is False

    def test_ping_healthy(self, store: AccountStore):
        assert store.ping() is True
