#!/usr/bin/env python3
"""
ChatAuth -- operator commands for the credential and session store.

Usage:
  python main.py purge
  python main.py check-password
  python main.py deactivate ada@example.com
  python main.py activate ada@example.com

Environment variables are the same as the API server (see core/config.py).
DATABASE_URL selects the store; SECRET_KEY is required unless DEBUG=true.
"""

from __future__ import annotations

import argparse
import getpass
from typing import Optional

from auth.errors import AuthError
from auth.gateway import AuthenticationGateway
from auth.store import AuthStore
from core.config import Settings, get_settings


def _build_gateway(settings: Settings) -> tuple[AuthenticationGateway, AuthStore]:
    store = AuthStore(settings.database_url, timeout=settings.store_timeout_seconds)
    return AuthenticationGateway(settings, sessions=store, accounts=store), store


def _cmd_purge(gateway: AuthenticationGateway, args: argparse.Namespace) -> int:
    removed = gateway.purge_sessions()
    print(f"Purged {removed} refresh session(s).")
    return 0


def _cmd_check_password(gateway: AuthenticationGateway, args: argparse.Namespace) -> int:
    password = getpass.getpass("Password: ")
    report = gateway.check_password_strength(password)
    if report.valid:
        print("Password meets all requirements.")
        return 0
    for violation in report.violations:
        print(f"  [!] {violation}")
    return 1


def _cmd_set_active(gateway: AuthenticationGateway, args: argparse.Namespace) -> int:
    active = args.command == "activate"
    account = gateway.set_account_active(args.email, active)
    if account is None:
        print(f"  [!] No account with email '{args.email}'.")
        return 1
    state = "activated" if active else "deactivated (all sessions revoked)"
    print(f"Account {account.id} <{account.email}> {state}.")
    return 0


_COMMANDS = {
    "purge": _cmd_purge,
    "check-password": _cmd_check_password,
    "activate": _cmd_set_active,
    "deactivate": _cmd_set_active,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="chatauth",
        description="Operator commands for ChatAuth accounts and refresh sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py purge
  python main.py check-password
  python main.py deactivate ada@example.com
  DATABASE_URL=sqlite:////var/lib/chatauth.db python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("purge", help="Delete revoked/expired refresh sessions past the retention window")
    sub.add_parser("check-password", help="Check a password against the strength policy")
    deactivate = sub.add_parser("deactivate", help="Deactivate an account and revoke all of its sessions")
    deactivate.add_argument("email", metavar="EMAIL")
    activate = sub.add_parser("activate", help="Re-activate a deactivated account")
    activate.add_argument("email", metavar="EMAIL")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    gateway, store = _build_gateway(get_settings())
    try:
        return _COMMANDS[args.command](gateway, args)
    except AuthError as exc:
        print(f"  [!] {exc.message} ({exc.code.value})")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
