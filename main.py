#!/usr/bin/env python3
"""
bizdir -- Command-line client for the business directory API.

Usage:
  python main.py login --email admin@example.com
  python main.py profile --email admin@example.com
  python main.py companies
  python main.py companies --view premium
  python main.py companies --search bakery --json
  python main.py users --role admin --email admin@example.com
  python main.py inquiries --status new --email admin@example.com

Commands that need a signed-in user take --email (or --username) and prompt
for the password unless --password is given.

Environment variables (or .env):
  API_BASE_URL   Server origin (default http://localhost:5000)
  API_PREFIX     Route prefix (default /api)
  STATE_DB_URL   Where persisted client state lives; empty keeps it in memory
  LOG_LEVEL      DEBUG, INFO, WARNING ... (default INFO)
"""

import argparse
import asyncio
import dataclasses
import getpass
import json
import logging
import sys
from typing import Optional

from auth.models import LoginCredentials
from client import DirectoryClient
from core.config import get_settings
from core.envelope import Envelope
from core.errors import AuthorizationError

COMPANY_VIEWS = ("all", "mine", "premium", "verified", "top-rated", "blocked")


def _credentials(args: argparse.Namespace) -> Optional[LoginCredentials]:
    if not args.email and not args.username:
        return None
    password = args.password or getpass.getpass("Password: ")
    return LoginCredentials(password=password, email=args.email, username=args.username)


def _print_records(records: list, as_json: bool, columns: tuple[str, ...]) -> None:
    if as_json:
        print(json.dumps([dataclasses.asdict(r) for r in records], indent=2, default=str))
        return
    if not records:
        print("  (no records)")
        return
    for record in records:
        print("  " + "  ".join(str(getattr(record, c, "") or "-") for c in columns))


def _report_failure(envelope: Envelope) -> int:
    print(f"  [!] {envelope.message or 'Request failed'}", file=sys.stderr)
    if envelope.extra("blocked_until"):
        print(f"      Account blocked until {envelope.extra('blocked_until')}", file=sys.stderr)
    return 1


async def _sign_in(client: DirectoryClient, args: argparse.Namespace) -> Optional[Envelope]:
    creds = _credentials(args)
    if creds is None:
        return None
    envelope = await client.session.login(creds)
    if envelope.success:
        await client.synchronizer.wait_idle()
    return envelope


async def _run(args: argparse.Namespace) -> int:
    async with DirectoryClient() as client:
        login = await _sign_in(client, args)
        if login is not None and not login.success:
            return _report_failure(login)

        if args.command in ("login", "profile"):
            if not client.session.authenticated:
                print("  [!] Not signed in. Pass --email or --username.", file=sys.stderr)
                return 1
            if args.command == "profile":
                envelope = await client.session.get_profile()
                if not envelope.success:
                    return _report_failure(envelope)
            identity = client.session.identity
            if args.json:
                print(json.dumps(identity.to_payload(), indent=2))
            else:
                print(f"  {identity.display_name} <{identity.email}>  role={identity.role or '-'}")
            return 0

        if args.command == "companies":
            store = client.organizations
            if args.search:
                envelope = await store.search(args.search, {"page": args.page})
                records = store.items
            elif args.view == "all":
                envelope = await store.get_all({"page": args.page})
                records = store.items
            elif args.view == "mine":
                envelope = await store.get_mine({"page": args.page})
                records = store.mine
            elif args.view == "top-rated":
                envelope = await store.get_top_rated()
                records = store.collection("top_rated")
            else:
                fetch = {
                    "premium": store.get_premium,
                    "verified": store.get_verified,
                    "blocked": store.get_blocked,
                }[args.view]
                envelope = await fetch({"page": args.page})
                records = store.collection(args.view)
            if not envelope.success:
                return _report_failure(envelope)
            _print_records(records, args.json, ("id", "name", "slug", "is_verified", "is_premium"))
            return 0

        if args.command == "users":
            store = client.users
            envelope = await store.get_all()
            if not envelope.success:
                return _report_failure(envelope)
            store.set_filters(role=args.role)
            _print_records(store.filtered(), args.json, ("id", "username", "email", "role"))
            return 0

        if args.command == "inquiries":
            store = client.inquiries
            envelope = await store.get_all()
            if not envelope.success:
                return _report_failure(envelope)
            store.set_filters(status=args.status)
            _print_records(store.filtered(), args.json, ("id", "full_name", "email", "status", "created_at"))
            return 0

    return 2


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="bizdir",
        description="Business directory API client.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--email", metavar="EMAIL", help="Sign in with this email before running the command")
    parser.add_argument("--username", metavar="NAME", help="Sign in with this username instead of an email")
    parser.add_argument("--password", metavar="PASSWORD", help="Password (prompted for when omitted)")
    parser.add_argument("--json", action="store_true", help="Output structured JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("login", help="Sign in and print the session identity")
    sub.add_parser("profile", help="Fetch and print the signed-in user's profile")

    companies = sub.add_parser("companies", help="List companies")
    companies.add_argument("--view", choices=COMPANY_VIEWS, default="all", help="Which listing to fetch")
    companies.add_argument("--search", metavar="QUERY", help="Server-side search instead of a listing")
    companies.add_argument("--page", type=int, default=1)

    users = sub.add_parser("users", help="List users (admin)")
    users.add_argument("--role", choices=["ALL", "admin", "author", "seller"], default="ALL")

    inquiries = sub.add_parser("inquiries", help="List contact inquiries (admin)")
    inquiries.add_argument("--status", choices=["new", "in_progress", "resolved", "closed"], default=None)

    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else getattr(logging, get_settings().log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        code = asyncio.run(_run(args))
    except AuthorizationError as e:
        print(f"  [!] {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
