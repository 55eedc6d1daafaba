#!/usr/bin/env python3
"""
PocketLedger -- operator command line.

Usage:
  python main.py seed-admin --email admin@example.com --password 'long-secret'
  python main.py seed-admin --email admin@example.com            # password from ADMIN_PASSWORD
  python main.py seed-admin --email ops@example.com --first-name Ops --last-name Team

seed-admin creates the first administrator account. It is a no-op when an
admin already exists, so it is safe to run on every deploy.

Environment variables:
  DATABASE_URL    Database to seed (same setting the API uses).
  ADMIN_PASSWORD  Password for seed-admin when --password is omitted.
"""

import argparse
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import Role, User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings

_MIN_PASSWORD_LENGTH = 6


def seed_admin(store: UserStore, email: str, password: str, first_name: str = "Admin", last_name: str = "User") -> str:
    """Create an admin account unless one already exists. Returns a status line."""
    if store.has_admin():
        return "Admin user already exists. Nothing to do."
    try:
        user_id = store.create_user(
            User(
                email=email.lower(),
                hashed_password=hash_password(password),
                first_name=first_name,
                last_name=last_name,
                role=Role.admin,
            )
        )
    except IntegrityError:
        return f"A non-admin account already uses {email}. Choose another email."
    return f"Admin user created: {email} (id {user_id})"


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="pocketledger",
        description="PocketLedger operator commands.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command")

    seed = sub.add_parser("seed-admin", help="Create the initial administrator account")
    seed.add_argument("--email", required=True, help="Admin email address")
    seed.add_argument(
        "--password",
        default=None,
        help="Admin password (defaults to the ADMIN_PASSWORD environment variable)",
    )
    seed.add_argument("--first-name", default="Admin")
    seed.add_argument("--last-name", default="User")

    args = parser.parse_args()

    if args.command != "seed-admin":
        parser.print_help()
        sys.exit(1)

    settings = get_settings()
    password = args.password or settings.admin_password
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters (use --password or ADMIN_PASSWORD).")
        sys.exit(1)

    store = UserStore(settings.database_url)
    try:
        print(f"  {seed_admin(store, args.email, password, args.first_name, args.last_name)}")
    finally:
        store.close()


if __name__ == "__main__":
    main()
