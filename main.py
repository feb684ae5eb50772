#!/usr/bin/env python3
"""
BTHL Auth -- operator CLI for the authentication service.

Usage:
  python main.py create-admin --username root --email root@example.com
  python main.py create-admin --username ops --email ops@example.com --role ADMIN --password-stdin < pw.txt
  python main.py unlock alice
  python main.py audit --limit 20
  python main.py audit --resource-id 1b0c... --action failed_login --json
  python main.py serve --port 8000

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the identity store (default: sqlite file next to this script)
  SECRET_KEY    Required unless DEBUG=true. See core/config.py.
"""

import argparse
import getpass
import json
import sys
from typing import Optional

from auth.accounts import AccountService
from auth.audit import AuditEmitter
from auth.authenticator import Authenticator
from auth.models import AuditAction, UserType
from auth.results import Outcome
from auth.store import IdentityStore
from core.config import get_settings

_ADMIN_ROLES = ("SUPER_ADMIN", "ADMIN")


def _read_password(from_stdin: bool) -> Optional[str]:
    """Read the new password from stdin or prompt twice on the terminal."""
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def _report_failure(outcome: Outcome) -> int:
    error = outcome.error
    print(f"  [!] {error.message}")
    for violation in error.violations:
        print(f"      - {violation}")
    return 1


def cmd_create_admin(store: IdentityStore, args: argparse.Namespace) -> int:
    password = _read_password(args.password_stdin)
    if password is None:
        return 1
    accounts = AccountService(store, AuditEmitter(store))
    outcome = accounts.create_verified(
        username=args.username,
        email=args.email,
        password=password,
        role=args.role,
        user_type=UserType.ADMIN,
    )
    if not outcome.ok:
        return _report_failure(outcome)
    print(f"  Created {outcome.value.role} account '{outcome.value.username}' ({outcome.value.id}).")
    return 0


def cmd_unlock(store: IdentityStore, args: argparse.Namespace) -> int:
    identity = store.get_by_id(args.identity) or store.get_by_identifier(args.identity)
    if identity is None:
        print(f"  [!] No account matches '{args.identity}'.")
        return 1
    outcome = Authenticator(store, AuditEmitter(store)).unlock(identity.id, actor_id=None)
    if not outcome.ok:
        return _report_failure(outcome)
    print(f"  Unlocked '{outcome.value.username}'.")
    return 0


def cmd_audit(store: IdentityStore, args: argparse.Namespace) -> int:
    action = AuditAction(args.action) if args.action else None
    records = store.list_audit(
        resource_id=args.resource_id,
        actor_id=args.actor_id,
        action=action,
        limit=args.limit,
    )
    if args.json:
        print(
            json.dumps(
                [
                    {
                        "id": r.id,
                        "timestamp": r.timestamp.isoformat(),
                        "action": r.action.value,
                        "resourceType": r.resource_type,
                        "resourceId": r.resource_id,
                        "actorId": r.actor_id,
                        "ipAddress": r.ip_address,
                        "details": r.details,
                    }
                    for r in records
                ],
                indent=2,
            )
        )
        return 0
    if not records:
        print("  No audit records.")
        return 0
    for r in records:
        print(
            f"  {r.timestamp.isoformat()}  {r.action.value:<13} "
            f"{r.resource_type}/{r.resource_id or '-'}  actor={r.actor_id or '-'}  {r.details}"
        )
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bthl-auth",
        description="Operator tools for the BTHL authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy URL of the identity store (default: DATABASE_URL setting)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-admin", help="Create an active, verified administrator account")
    create.add_argument("--username", required=True)
    create.add_argument("--email", required=True)
    create.add_argument("--role", choices=_ADMIN_ROLES, default="SUPER_ADMIN")
    create.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )

    unlock = sub.add_parser("unlock", help="Clear the lockout on an account")
    unlock.add_argument("identity", metavar="ID-OR-NAME", help="Identity id, username or email")

    audit = sub.add_parser("audit", help="Print the audit trail, newest first")
    audit.add_argument("--resource-id", default=None)
    audit.add_argument("--actor-id", default=None)
    audit.add_argument("--action", choices=[a.value for a in AuditAction], default=None)
    audit.add_argument("--limit", type=int, default=50)
    audit.add_argument("--json", action="store_true", help="Output structured JSON")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "serve":
        return cmd_serve(args)

    store = IdentityStore(args.database_url or get_settings().database_url)
    try:
        if args.command == "create-admin":
            return cmd_create_admin(store, args)
        if args.command == "unlock":
            return cmd_unlock(store, args)
        return cmd_audit(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
