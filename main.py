#!/usr/bin/env python3
"""
credential-store -- Admin CLI for the credential store.

Usage:
  python main.py init-db
  python main.py set-password alice
  python main.py issue-token alice
  python main.py issue-token alice --type PrivilegedToken --max-age-minutes 60
  python main.py check-token -- "<token>.<id>"
  python main.py check-password alice

Environment variables:
  CREDSTORE_DB_URL   SQLAlchemy URL of the credentials database.
                     Default: sqlite file credentials.db in the project root.
  CREDSTORE_*_COST   bcrypt cost per credential type (see core/config.py).

Exit codes: 0 on success / valid credential, 1 on rejection, 2 on usage error.
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from core.config import get_settings
from credentials.errors import ConfigurationError
from credentials.models import TOKEN_TYPES, CredentialType
from credentials.store import CredentialStore

_TOKEN_TYPE_CHOICES = sorted(t.value for t in TOKEN_TYPES)


def _read_password(confirm: bool) -> str:
    """Prompt for a password without echo. Returns "" if confirmation differs."""
    password = getpass.getpass("Password: ")
    if confirm and getpass.getpass("Repeat password: ") != password:
        return ""
    return password


def _cmd_init_db(store: CredentialStore, args: argparse.Namespace) -> int:
    # CredentialStore() already ran create_all.
    print(f"  Credentials table ready at {store.engine.url.render_as_string(hide_password=True)}")
    return 0


def _cmd_set_password(store: CredentialStore, args: argparse.Namespace) -> int:
    password = _read_password(confirm=True)
    if not password:
        print("  [!] Passwords were empty or did not match.")
        return 1
    with store.transaction() as conn:
        cred = store.set_password(conn, args.user, password)
    print(f"  Password set for {args.user} (credential {cred.id}).")
    return 0


def _cmd_issue_token(store: CredentialStore, args: argparse.Namespace) -> int:
    settings = get_settings()
    max_age = settings.token_max_age_minutes if args.max_age_minutes is None else args.max_age_minutes
    length = settings.token_length if args.length is None else args.length
    bearer = store.generate_and_save_token(args.user, CredentialType(args.type), max_age, length)
    # The raw token is unrecoverable after this line.
    print(bearer)
    return 0


def _cmd_check_token(store: CredentialStore, args: argparse.Namespace) -> int:
    cred = store.validate_token(args.bearer, CredentialType(args.type))
    if cred is None:
        print("  invalid")
        return 1
    expires = cred.expires_at.isoformat() if cred.expires_at else "never"
    print(f"  valid: user={cred.user_id} credential={cred.id} expires={expires}")
    return 0


def _cmd_check_password(store: CredentialStore, args: argparse.Namespace) -> int:
    password = _read_password(confirm=False)
    if store.validate_password(args.user, password):
        print("  valid")
        return 0
    print("  invalid")
    return 1


_COMMANDS = {
    "init-db": _cmd_init_db,
    "set-password": _cmd_set_password,
    "issue-token": _cmd_issue_token,
    "check-token": _cmd_check_token,
    "check-password": _cmd_check_password,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="credential-store",
        description="Issue and validate passwords and bearer tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py set-password alice
  python main.py issue-token alice --max-age-minutes 60
  python main.py check-token --type SessionToken -- "$TOKEN"   # tokens may start with "-"
  CREDSTORE_DB_URL=postgresql://user:pw@host/db python main.py init-db
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("init-db", help="Create the credentials table if it does not exist")

    p = sub.add_parser("set-password", help="Set (replace) a user's password; prompts without echo")
    p.add_argument("user", metavar="USER_ID")

    p = sub.add_parser("issue-token", help="Mint a bearer token and print it once")
    p.add_argument("user", metavar="USER_ID")
    p.add_argument("--type", choices=_TOKEN_TYPE_CHOICES, default=CredentialType.SESSION_TOKEN.value)
    p.add_argument(
        "--max-age-minutes",
        type=int,
        default=None,
        metavar="N",
        help="Token lifetime in minutes; 0 never expires (default: CREDSTORE_TOKEN_MAX_AGE_MINUTES)",
    )
    p.add_argument("--length", type=int, default=None, metavar="BYTES", help="Random bytes in the token")

    p = sub.add_parser("check-token", help="Validate a bearer token")
    p.add_argument("bearer", metavar="TOKEN")
    p.add_argument("--type", choices=_TOKEN_TYPE_CHOICES, default=CredentialType.SESSION_TOKEN.value)

    p = sub.add_parser("check-password", help="Validate a user's password; prompts without echo")
    p.add_argument("user", metavar="USER_ID")
    return parser


def main(argv: Optional[list[str]] = None, store: Optional[CredentialStore] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command is None:
        parser.print_help()
        return 2

    owns_store = store is None
    if store is None:
        store = CredentialStore.from_settings()
    try:
        return _COMMANDS[args.command](store, args)
    except ConfigurationError as e:
        print(f"  [!] {e}")
        return 2
    finally:
        if owns_store:
            store.close()


if __name__ == "__main__":
    sys.exit(main())
