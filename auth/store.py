"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account / _row_to_refresh_token / _row_to_attempt are the mappers.
The lockout tracker, refresh manager and session issuer never touch SQL.

The store exposes the document-store contract the auth core is written
against: create, get_by_email, get_by_id, conditional_update. Any SQLAlchemy
URL works; tests use SQLite.

Concurrency:
  conditional_update() is a compare-and-swap on the accounts.version column.
  The UPDATE's WHERE clause carries the version the caller read, so two
  writers racing on the same account cannot both succeed -- the loser sees
  rowcount 0 and must re-read. This is what keeps failed-login counting
  linearizable without per-account locks.

  Refresh tokens live in their own table keyed by token_hash with an
  account_id back-reference. Issue and revoke are single-row INSERT/DELETE
  statements, so they never rewrite the account row and cannot lose updates.

Failure policy:
  IntegrityError propagates unchanged (duplicate email is a caller concern).
  Every other database error is logged and re-raised as StorageUnavailable.
  No retries here -- retry policy belongs to the deployment, not the core.

Timestamps are stored as fixed-width UTC ISO 8601 strings (microsecond
precision) so lexicographic comparison in SQL matches chronological order.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import StorageUnavailable
from auth.models import Account, LoginAttemptEvent, RefreshTokenRecord

logger = logging.getLogger("invoicer.auth.store")

_DEFAULT_DB_URL = "sqlite:///invoicer_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # always lowercase
    Column("name", String(255), nullable=False, server_default=""),
    Column("image", Text),
    Column("password_hash", Text),  # NULL for external-identity accounts
    Column("failed_attempt_count", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("version", Integer, nullable=False, server_default="0"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("token_prefix", String(8), nullable=False),  # display only
    Column("expires_at", String(32), nullable=False),
    Column("device_info", Text, nullable=False),
    Column("source_ip", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("timestamp", String(32), nullable=False),
    Column("source_ip", String(64), nullable=False),
    Column("device_info", Text, nullable=False),
    Column("succeeded", Integer, nullable=False),
)

# Columns conditional_update() / update_profile() may write. Validated before
# any SQL is built so callers cannot smuggle in id/email/version.
_MUTABLE_FIELDS = frozenset({"failed_attempt_count", "locked_until", "last_login", "name", "image", "password_hash"})
_PROFILE_FIELDS = frozenset({"name", "image", "last_login"})


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout on every new connection.

    WAL lets readers proceed during writes. The busy timeout makes a second
    writer wait for the lock instead of failing immediately, which matters
    when several failed logins for one account race. PRAGMAs are not
    inherited by pooled connections, so this runs per connection.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA busy_timeout=5000")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


def _encode_fields(fields: dict, allowed: frozenset) -> dict:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown account fields: {unknown!r}")
    return {k: _to_iso(v) if isinstance(v, datetime) else v for k, v in fields.items()}


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Translate driver failures into StorageUnavailable, leaving IntegrityError alone."""
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        logger.exception("Account store operation %s failed", operation)
        raise StorageUnavailable() from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account, RefreshTokenRecord and LoginAttemptEvent entities.

    Usage:
        store = AccountStore("sqlite:///auth.db")
        account_id = store.create_account(Account(email="a@example.com", password_hash=hash_password("s3cret!")))
        account = store.get_by_email("A@Example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        with _storage_errors("create_schema"):
            _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with _storage_errors("create_account"), self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=normalize_email(account.email),
                    name=account.name,
                    image=account.image,
                    password_hash=account.password_hash,
                    failed_attempt_count=0,
                    created_at=_now_iso(),
                    version=0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email, case-insensitively. Returns None if not found."""
        with _storage_errors("get_by_email"), self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
            return self._hydrate(conn, row)

    def get_by_id(self, account_id: int) -> Account | None:
        with _storage_errors("get_by_id"), self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
            return self._hydrate(conn, row)

    def conditional_update(self, account_id: int, expected_version: int, **fields) -> bool:
        """Apply fields only if the stored version still equals expected_version.

        Bumps version on success. Returns False when another writer got there
        first (or the account is gone); the caller re-reads and re-decides.
        """
        values = _encode_fields(fields, _MUTABLE_FIELDS)
        with _storage_errors("conditional_update"), self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.version == expected_version))
                .values(version=_accounts.c.version + 1, **values)
            )
            conn.commit()
        return result.rowcount == 1

    def update_profile(self, account_id: int, **fields) -> bool:
        """Unconditionally update non-security fields (name, image, last_login)."""
        values = _encode_fields(fields, _PROFILE_FIELDS)
        if not values:
            return False
        with _storage_errors("update_profile"), self.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, record: RefreshTokenRecord) -> int:
        with _storage_errors("add_refresh_token"), self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    account_id=record.account_id,
                    token_hash=record.token_hash,
                    token_prefix=record.token_prefix,
                    expires_at=_to_iso(record.expires_at),
                    device_info=record.device_info,
                    source_ip=record.source_ip,
                    created_at=_to_iso(record.created_at) or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_refresh_tokens(self, account_id: int) -> list[RefreshTokenRecord]:
        """Return every stored record for an account, oldest first. Expired rows included."""
        with _storage_errors("get_refresh_tokens"), self.engine.connect() as conn:
            return self._refresh_tokens_for(conn, account_id)

    def find_refresh_token(self, token_hash: str) -> RefreshTokenRecord | None:
        """Look up a record by digest across all accounts. O(1) via UNIQUE index."""
        with _storage_errors("find_refresh_token"), self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def delete_refresh_token(self, account_id: int, token_hash: str) -> bool:
        """Delete one record. account_id is checked so one account cannot revoke another's token."""
        with _storage_errors("delete_refresh_token"), self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.token_hash == token_hash)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def delete_refresh_tokens(self, account_id: int) -> int:
        with _storage_errors("delete_refresh_tokens"), self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.account_id == account_id))
            conn.commit()
        return result.rowcount

    def replace_refresh_token(self, account_id: int, old_token_hash: str, record: RefreshTokenRecord) -> bool:
        """Swap one record for another in a single transaction (rotation).

        Returns False and writes nothing if the old record is already gone,
        so two renewals racing on one token cannot both mint a successor.
        """
        with _storage_errors("replace_refresh_token"), self.engine.connect() as conn:
            deleted = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.token_hash == old_token_hash)
                )
            )
            if deleted.rowcount != 1:
                conn.rollback()
                return False
            conn.execute(
                _refresh_tokens.insert().values(
                    account_id=record.account_id,
                    token_hash=record.token_hash,
                    token_prefix=record.token_prefix,
                    expires_at=_to_iso(record.expires_at),
                    device_info=record.device_info,
                    source_ip=record.source_ip,
                    created_at=_to_iso(record.created_at) or _now_iso(),
                )
            )
            conn.commit()
        return True

    def prune_expired_refresh_tokens(self, account_id: int, now: datetime) -> int:
        """Delete records whose expires_at is at or before now. Returns rows removed."""
        with _storage_errors("prune_expired_refresh_tokens"), self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.expires_at <= _to_iso(now))
                )
            )
            conn.commit()
        return result.rowcount

    def trim_refresh_tokens(self, account_id: int, keep: int) -> int:
        """Keep only the newest `keep` records for an account. Returns rows removed."""
        newest = (
            select(_refresh_tokens.c.id)
            .where(_refresh_tokens.c.account_id == account_id)
            .order_by(_refresh_tokens.c.id.desc())
            .limit(keep)
        )
        with _storage_errors("trim_refresh_tokens"), self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.account_id == account_id) & _refresh_tokens.c.id.not_in(newest)
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Login attempts
    # ------------------------------------------------------------------

    def add_login_attempt(self, attempt: LoginAttemptEvent, keep: int = 10) -> None:
        """Record an attempt and drop all but the newest `keep` for that account."""
        newest = (
            select(_login_attempts.c.id)
            .where(_login_attempts.c.account_id == attempt.account_id)
            .order_by(_login_attempts.c.id.desc())
            .limit(keep)
        )
        with _storage_errors("add_login_attempt"), self.engine.connect() as conn:
            conn.execute(
                _login_attempts.insert().values(
                    account_id=attempt.account_id,
                    timestamp=_to_iso(attempt.timestamp),
                    source_ip=attempt.source_ip,
                    device_info=attempt.device_info,
                    succeeded=1 if attempt.succeeded else 0,
                )
            )
            conn.execute(
                _login_attempts.delete().where(
                    (_login_attempts.c.account_id == attempt.account_id) & _login_attempts.c.id.not_in(newest)
                )
            )
            conn.commit()

    def get_login_attempts(self, account_id: int) -> list[LoginAttemptEvent]:
        """Return recorded attempts for an account, newest first."""
        with _storage_errors("get_login_attempts"), self.engine.connect() as conn:
            rows = conn.execute(
                _login_attempts.select()
                .where(_login_attempts.c.account_id == account_id)
                .order_by(_login_attempts.c.id.desc())
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    # ------------------------------------------------------------------
    # Health / lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Account store ping failed", exc_info=True)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _hydrate(self, conn, row) -> Account | None:
        if row is None:
            return None
        account = _row_to_account(row)
        account.refresh_tokens = self._refresh_tokens_for(conn, account.id)
        return account

    def _refresh_tokens_for(self, conn, account_id: int) -> list[RefreshTokenRecord]:
        rows = conn.execute(
            _refresh_tokens.select().where(_refresh_tokens.c.account_id == account_id).order_by(_refresh_tokens.c.id)
        ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; the stored form is stripped lowercase."""
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        name=row.name,
        image=row.image,
        password_hash=row.password_hash,
        failed_attempt_count=row.failed_attempt_count,
        locked_until=_from_iso(row.locked_until),
        last_login=_from_iso(row.last_login),
        created_at=_from_iso(row.created_at),
        version=row.version,
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        token_prefix=row.token_prefix,
        expires_at=_from_iso(row.expires_at),
        device_info=row.device_info,
        source_ip=row.source_ip,
        created_at=_from_iso(row.created_at),
    )


def _row_to_attempt(row) -> LoginAttemptEvent:
    return LoginAttemptEvent(
        account_id=row.account_id,
        timestamp=_from_iso(row.timestamp),
        source_ip=row.source_ip,
        device_info=row.device_info,
        succeeded=bool(row.succeeded),
    )
