#!/usr/bin/env python3
"""
PassGate -- administrative command line.

Usage:
  python main.py create-admin --email admin@example.com
  python main.py create-admin --email admin@example.com --password 's3cret-pass'
  python main.py list-users

The API itself is served by uvicorn (uvicorn asgi:app). This tool talks to the
same database directly so the first Admin can be created before anyone can
sign in.

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the user database (default: ./passgate.db)
  SECRET_KEY    Required unless DEBUG=true (see core/config.py)
"""

import argparse
import getpass
import sys
from datetime import datetime, timezone

from auth.accounts import create_account
from auth.hashing import MAX_SECRET_BYTES, hash_secret
from auth.models import AuthProvider, Role, normalize_email
from auth.store import UserStore
from core.config import get_settings

_MIN_PASSWORD_LENGTH = 6


def _read_password(given: str | None) -> str:
    if given:
        return given
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def create_admin(store: UserStore, email: str, password: str) -> int:
    """Create an Admin account, or promote the existing account with this email."""
    email = normalize_email(email)
    if "@" not in email:
        print(f"  [!] '{email}' is not an email address.")
        return 1
    existing = store.get_by_email(email)
    if existing is not None:
        if existing.role is Role.ADMIN:
            print(f"  {email} is already an Admin.")
            return 0
        if store.apply(existing.id, existing.version, {"role": Role.ADMIN}) is None:
            print("  [!] The account changed while updating it. Try again.")
            return 1
        print(f"  Promoted {email} ({existing.username}) to Admin.")
        return 0

    if not _MIN_PASSWORD_LENGTH <= len(password.encode("utf-8")) <= MAX_SECRET_BYTES:
        print(f"  [!] Password must be {_MIN_PASSWORD_LENGTH} to {MAX_SECRET_BYTES} bytes long.")
        return 1
    user = create_account(
        store,
        email=email,
        now=datetime.now(timezone.utc),
        password_hash=hash_secret(password),
        role=Role.ADMIN,
        auth_provider=AuthProvider.LOCAL,
    )
    if user is None:
        print(f"  [!] {email} was registered concurrently. Run the command again to promote it.")
        return 1
    print(f"  Created Admin {email} (username: {user.username}, id: {user.id}).")
    return 0


def list_users(store: UserStore) -> int:
    users = store.list_users()
    if not users:
        print("  No users yet. Create one with: python main.py create-admin --email you@example.com")
        return 0
    print(f"  {'USERNAME':<24} {'EMAIL':<36} {'ROLE':<6} {'PROVIDER':<8} ACTIVE")
    print("  " + "─" * 84)
    for user in users:
        print(
            f"  {user.username:<24} {(user.email or '-'):<36} {user.role.value:<6} "
            f"{user.auth_provider.value:<8} {'yes' if user.is_active else 'no'}"
        )
    print(f"\n  {len(users)} user(s).")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="passgate",
        description="Administrative tasks for the PassGate user database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email admin@example.com
  python main.py list-users
  DATABASE_URL=sqlite:////var/lib/passgate/users.db python main.py list-users
        """,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    admin_cmd = commands.add_parser("create-admin", help="Create an Admin account or promote an existing one")
    admin_cmd.add_argument("--email", required=True, help="Email address of the account")
    admin_cmd.add_argument(
        "--password",
        default=None,
        help="Password for a new account (prompted when omitted; ignored when promoting)",
    )

    commands.add_parser("list-users", help="List all accounts, newest first")

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    store = UserStore(get_settings().database_url)
    try:
        if args.command == "create-admin":
            existing = store.get_by_email(normalize_email(args.email))
            password = "" if existing is not None else _read_password(args.password)
            code = create_admin(store, args.email, password)
        else:
            code = list_users(store)
    finally:
        store.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
