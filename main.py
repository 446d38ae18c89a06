#!/usr/bin/env python3
"""
Invoicer auth -- operator command line.

Works directly against the account database, without the HTTP server, for the
chores support staff need when a customer is stuck.

Usage:
  python main.py create-account owner@example.com --name "Ada Owner"
  python main.py unlock owner@example.com
  python main.py revoke-tokens owner@example.com
  python main.py show owner@example.com
  python main.py show owner@example.com --json

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the account database (default: sqlite:///invoicer_auth.db)
  SECRET_KEY    Required unless DEBUG=true. Must match the server's key for
                refresh-token digests to line up.
"""

import argparse
import getpass
import json
import sys
from typing import Optional

from auth.errors import AccountExists, WeakPassword
from auth.session import SessionIssuer, build_session_issuer
from auth.store import AccountStore
from core.config import get_settings


def _load(issuer: SessionIssuer, email: str):
    account = issuer.store.get_by_email(email)
    if account is None:
        print(f"  [!] No account found for '{email}'.")
    return account


def cmd_create_account(issuer: SessionIssuer, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    try:
        account = issuer.sign_up(args.email, args.name or args.email, password)
    except WeakPassword as exc:
        print("  [!] Password rejected:")
        for err in exc.errors:
            print(f"      - {err}")
        return 1
    except AccountExists:
        print(f"  [!] An account for '{args.email}' already exists.")
        return 1
    print(f"  Created account {account.id} ({account.email}).")
    return 0


def cmd_unlock(issuer: SessionIssuer, args: argparse.Namespace) -> int:
    account = _load(issuer, args.email)
    if account is None:
        return 1
    issuer.lockout.unlock(account.id)
    print(f"  Unlocked {account.email}; failure counter reset.")
    return 0


def cmd_revoke_tokens(issuer: SessionIssuer, args: argparse.Namespace) -> int:
    account = _load(issuer, args.email)
    if account is None:
        return 1
    removed = issuer.refresh_tokens.revoke_all(account.id)
    print(f"  Revoked {removed} refresh token(s) for {account.email}.")
    return 0


def cmd_show(issuer: SessionIssuer, args: argparse.Namespace) -> int:
    account = _load(issuer, args.email)
    if account is None:
        return 1
    locked = issuer.lockout.is_locked(account)
    sessions = issuer.refresh_tokens.list_active(account.id)
    attempts = issuer.store.get_login_attempts(account.id)

    if args.json:
        print(
            json.dumps(
                {
                    "id": account.id,
                    "email": account.email,
                    "name": account.name,
                    "has_password": bool(account.password_hash),
                    "failed_attempt_count": account.failed_attempt_count,
                    "locked": locked,
                    "locked_until": account.locked_until.isoformat() if account.locked_until else None,
                    "last_login": account.last_login.isoformat() if account.last_login else None,
                    "sessions": [
                        {
                            "token_prefix": s.token_prefix,
                            "device_info": s.device_info,
                            "source_ip": s.source_ip,
                            "expires_at": s.expires_at.isoformat(),
                        }
                        for s in sessions
                    ],
                    "login_attempts": [
                        {
                            "timestamp": a.timestamp.isoformat(),
                            "succeeded": a.succeeded,
                            "source_ip": a.source_ip,
                        }
                        for a in attempts
                    ],
                },
                indent=2,
            )
        )
        return 0

    print(f"\n{account.email} (id {account.id})")
    print("─" * 40)
    print(f"  Name:            {account.name}")
    print(f"  Password login:  {'yes' if account.password_hash else 'no (external identity only)'}")
    print(f"  Failed attempts: {account.failed_attempt_count}")
    if locked:
        minutes = issuer.lockout.remaining_lock_minutes(account)
        print(f"  Locked:          yes, {minutes} minute(s) remaining")
    else:
        print("  Locked:          no")
    print(f"  Last login:      {account.last_login.isoformat() if account.last_login else 'never'}")
    print(f"\n  Active refresh tokens: {len(sessions)}")
    for s in sessions:
        print(f"    {s.token_prefix}…  {s.source_ip:<15}  expires {s.expires_at:%Y-%m-%d}  {s.device_info[:40]}")
    print(f"\n  Recent login attempts: {len(attempts)}")
    for a in attempts:
        outcome = "ok  " if a.succeeded else "FAIL"
        print(f"    {a.timestamp:%Y-%m-%d %H:%M:%S}  {outcome}  {a.source_ip}")
    print()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="invoicer-auth",
        description="Operator tools for Invoicer accounts and sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-account owner@example.com --name "Ada Owner"
  python main.py unlock owner@example.com
  python main.py revoke-tokens owner@example.com
  DATABASE_URL=sqlite:///prod_auth.db python main.py show owner@example.com --json
        """,
    )
    parser.add_argument(
        "--db",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL setting)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_create = sub.add_parser("create-account", help="Create a password account")
    p_create.add_argument("email")
    p_create.add_argument("--name", default=None, help="Display name (default: the email)")
    p_create.add_argument("--password", default=None, help="Password (prompted when omitted)")
    p_create.set_defaults(func=cmd_create_account)

    p_unlock = sub.add_parser("unlock", help="Clear a lockout and reset the failure counter")
    p_unlock.add_argument("email")
    p_unlock.set_defaults(func=cmd_unlock)

    p_revoke = sub.add_parser("revoke-tokens", help="Revoke every refresh token of an account")
    p_revoke.add_argument("email")
    p_revoke.set_defaults(func=cmd_revoke_tokens)

    p_show = sub.add_parser("show", help="Print lock state, active sessions and login history")
    p_show.add_argument("email")
    p_show.add_argument("--json", action="store_true", help="Output structured JSON")
    p_show.set_defaults(func=cmd_show)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    store = AccountStore(args.db or settings.database_url)
    try:
        return args.func(build_session_issuer(store, settings), args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
