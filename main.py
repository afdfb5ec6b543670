#!/usr/bin/env python3
"""
Notekeeper -- account administration from the command line.

Usage:
  python main.py seed
  python main.py create-account alice --email alice@example.com --name "Alice"
  python main.py reset-password alice
  python main.py grant-role alice admin
  python main.py enable-2fa alice
  python main.py disable-2fa alice

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the accounts database (default: notekeeper.db)
  SECRET_KEY    Required unless DEBUG=true (see core/config.py)
"""

import argparse
import getpass
import sys
from typing import Optional
from urllib.parse import quote, urlencode

from sqlalchemy.exc import IntegrityError

from auth.accounts import reset_password
from auth.credentials import hash_password
from auth.models import Verification
from auth.sessions import get_session_expiration_date
from auth.store import AccountStore
from auth.totp import TWO_FACTOR_VERIFICATION_TYPE, generate_totp
from core.config import get_settings


def _read_password(given: Optional[str]) -> Optional[str]:
    """Return the --password value or prompt twice for one."""
    if given:
        return given
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm:  ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    if len(first) < 6:
        print("  [!] Password must be at least 6 characters.")
        return None
    return first


def _cmd_seed(store: AccountStore, args: argparse.Namespace) -> int:
    store.ensure_defaults()
    for role in store.list_roles():
        perms = ", ".join(f"{p.action}:{p.entity}:{p.access}" for p in role.permissions)
        print(f"  {role.name:<8} {perms}")
    return 0


def _cmd_create_account(store: AccountStore, args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if password is None:
        return 1
    try:
        session = store.create_account_with_session(
            email=args.email.lower(),
            username=args.username.lower(),
            name=args.name or args.username,
            password_hash=hash_password(password),
            expiration_date=get_session_expiration_date(),
            organization_id=get_settings().organization_id,
        )
    except IntegrityError:
        print(f"  [!] An account with username '{args.username}' or email '{args.email}' already exists.")
        return 1
    # Signup always opens a session; a CLI-created account does not need one.
    store.delete_session(session.id)
    print(f"  Created account {args.username.lower()} ({session.active_account_id}).")
    return 0


def _cmd_reset_password(store: AccountStore, args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if password is None:
        return 1
    if not reset_password(store, username=args.username, password=password):
        print(f"  [!] No account named '{args.username}'.")
        return 1
    print(f"  Password updated for {args.username.lower()}.")
    return 0


def _cmd_grant_role(store: AccountStore, args: argparse.Namespace) -> int:
    account = store.get_account_by_username(args.username.lower())
    if account is None:
        print(f"  [!] No account named '{args.username}'.")
        return 1
    if not store.grant_role(account.id, args.role, get_settings().organization_id):
        print(f"  [!] Role '{args.role}' or a membership for {account.username} does not exist.")
        return 1
    print(f"  Granted {args.role} to {account.username}.")
    return 0


def _cmd_enable_2fa(store: AccountStore, args: argparse.Namespace) -> int:
    account = store.get_account_by_username(args.username.lower())
    if account is None:
        print(f"  [!] No account named '{args.username}'.")
        return 1
    config = generate_totp()
    store.upsert_verification(
        Verification(
            type=TWO_FACTOR_VERIFICATION_TYPE,
            target=account.id,
            secret=config["secret"],
            algorithm=config["algorithm"],
            digits=config["digits"],
            period=config["period"],
            char_set=config["char_set"],
        )
    )
    query = urlencode(
        {
            "secret": config["secret"],
            "issuer": "Notekeeper",
            "algorithm": config["algorithm"],
            "digits": config["digits"],
            "period": config["period"],
        }
    )
    print(f"  Two-factor enabled for {account.username}.")
    print(f"  Secret: {config['secret']}")
    print(f"  URI:    otpauth://totp/Notekeeper:{quote(account.email)}?{query}")
    return 0


def _cmd_disable_2fa(store: AccountStore, args: argparse.Namespace) -> int:
    account = store.get_account_by_username(args.username.lower())
    if account is None:
        print(f"  [!] No account named '{args.username}'.")
        return 1
    if not store.delete_verification(account.id, TWO_FACTOR_VERIFICATION_TYPE):
        print(f"  Two-factor was not enabled for {account.username}.")
        return 0
    print(f"  Two-factor disabled for {account.username}.")
    return 0


_COMMANDS = {
    "seed": _cmd_seed,
    "create-account": _cmd_create_account,
    "reset-password": _cmd_reset_password,
    "grant-role": _cmd_grant_role,
    "enable-2fa": _cmd_enable_2fa,
    "disable-2fa": _cmd_disable_2fa,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notekeeper",
        description="Notekeeper account administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed
  python main.py create-account alice --email alice@example.com
  python main.py grant-role alice admin
  DATABASE_URL=sqlite:////var/lib/notekeeper.db python main.py reset-password alice
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        help="Override DATABASE_URL for this invocation",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("seed", help="Create the default organization, roles and permissions")

    create = sub.add_parser("create-account", help="Create a password account with the user role")
    create.add_argument("username")
    create.add_argument("--email", required=True)
    create.add_argument("--name", help="Display name (default: the username)")
    create.add_argument("--password", help="Password (prompted for when omitted)")

    reset = sub.add_parser("reset-password", help="Overwrite an account's password")
    reset.add_argument("username")
    reset.add_argument("--password", help="New password (prompted for when omitted)")

    grant = sub.add_parser("grant-role", help="Attach a role to an account's memberships")
    grant.add_argument("username")
    grant.add_argument("role")

    enable = sub.add_parser("enable-2fa", help="Require a TOTP code at login and print the secret")
    enable.add_argument("username")

    disable = sub.add_parser("disable-2fa", help="Remove the TOTP requirement")
    disable.add_argument("username")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    store = AccountStore(args.database_url or get_settings().database_url)
    try:
        store.ensure_defaults()
        return _COMMANDS[args.command](store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
