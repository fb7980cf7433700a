#!/usr/bin/env python3
"""
AccessGate -- operator command line for waitlist approval and account provisioning.

Usage:
  python main.py waitlist
  python main.py waitlist --status pending
  python main.py approve ENTRY_ID
  python main.py create-account ENTRY_ID [--secret SECRET]
  python main.py users
  python main.py reconcile
  python main.py create-admin
  python main.py users --json

Environment variables (see core/config.py for the full list):
  RECORDS_DB_URL            SQLAlchemy URL of the record store
  IDENTITY_BACKEND          local (default) or firebase
  BOOTSTRAP_ADMIN_UID       uid that always resolves to a full administrator
  BOOTSTRAP_ADMIN_EMAIL     email used by create-admin
  BOOTSTRAP_ADMIN_PASSWORD  password used by create-admin
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

from core.documents import sort_documents, user_from_doc, waitlist_entry_from_doc
from core.errors import AccessGateError, ProviderConflict
from core.models import ROLE_ADMIN, WAITLIST_STATUSES, Collection, ProvisioningOutcome, SweepReport
from services import Services, build_services


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _print_outcome(outcome: ProvisioningOutcome, as_json: bool) -> None:
    if as_json:
        print(json.dumps(asdict(outcome), indent=2))
        return
    if outcome.entry is not None:
        print(f"  Entry   {outcome.entry.id}  {outcome.entry.email}  status={outcome.entry.status}  uid={outcome.entry.uid}")
    if outcome.user is not None:
        print(f"  User    {outcome.user.id}  role={outcome.user.role}  approved={outcome.user.is_approved}")
    if outcome.secret:
        verified = {True: "verified", False: "UNVERIFIED", None: "not checked"}[outcome.secret_verified]
        print(f"  Secret  {outcome.secret}  ({verified}; shown once)")
    if outcome.reset_email_sent:
        print("  Password reset email requested.")
    if outcome.session_invalidated:
        print("  Identity provider session was replaced during verification; sign in again.")
    for warning in outcome.warnings:
        print(f"  [!] {warning}")
    for failure in outcome.failed_writes:
        print(f"  [!] write to {failure.collection}/{failure.doc_id} failed ({', '.join(failure.fields)}): {failure.error}")


def _print_users(services: Services, report: SweepReport, as_json: bool) -> None:
    if as_json:
        rows = [{**asdict(u), "effective_permissions": services.resolver.resolve(u)} for u in report.users]
        print(json.dumps(rows, indent=2))
        return
    print(f"\n  {len(report.users)} user(s)")
    print("  " + "-" * 72)
    for user in report.users:
        granted = sum(services.resolver.resolve(user).values())
        print(
            f"  {user.id:<30} {user.email:<28} {user.role:<8} "
            f"{'approved' if user.is_approved else 'pending':<9} {granted}/{len(services.resolver.all_keys)}"
        )
    print()


def _print_report(report: SweepReport, as_json: bool) -> None:
    if as_json:
        print(json.dumps({k: v for k, v in asdict(report).items() if k != "users"}, indent=2))
        return
    print(f"  Reconciled {len(report.users)} user(s): {report.writes} write(s)")
    for uid in report.synthesized:
        print(f"    + synthesized {uid}")
    for uid in report.repaired:
        print(f"    * repaired    {uid}")
    for failure in report.failures:
        print(f"    [!] {failure.collection}/{failure.doc_id}: {failure.error}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_waitlist(services: Services, args: argparse.Namespace) -> int:
    docs = sort_documents(await services.records.list(Collection.WAITLIST), "timestamp", descending=True)
    entries = [waitlist_entry_from_doc(d) for d in docs]
    if args.status:
        entries = [e for e in entries if e.status == args.status]
    if args.json:
        print(json.dumps([asdict(e) for e in entries], indent=2))
        return 0
    print(f"\n  {len(entries)} waitlist entr{'y' if len(entries) == 1 else 'ies'}")
    print("  " + "-" * 72)
    for entry in entries:
        print(f"  {entry.id:<34} {entry.email:<28} {entry.status:<10} {entry.joined_at[:19]}")
    print()
    return 0


async def _cmd_approve(services: Services, args: argparse.Namespace) -> int:
    outcome = await services.provisioning.approve(args.entry_id)
    _print_outcome(outcome, args.json)
    return 0


async def _cmd_create_account(services: Services, args: argparse.Namespace) -> int:
    secret = args.secret or services.provisioning.generator.generate()
    outcome = await services.provisioning.create_account(args.entry_id, secret)
    if outcome.created and not args.secret:
        outcome.secret = secret
    _print_outcome(outcome, args.json)
    return 0


async def _cmd_users(services: Services, args: argparse.Namespace) -> int:
    report = await services.sweep.run()
    _print_users(services, report, args.json)
    return 0


async def _cmd_reconcile(services: Services, args: argparse.Namespace) -> int:
    report = await services.sweep.run()
    _print_report(report, args.json)
    return 1 if report.failures else 0


async def _cmd_create_admin(services: Services, args: argparse.Namespace) -> int:
    """Ensure the bootstrap admin has a provider account and an admin users record."""
    settings = services.settings
    email = settings.bootstrap_admin_email.strip().lower()
    password = settings.bootstrap_admin_password
    if not password:
        print("  [!] BOOTSTRAP_ADMIN_PASSWORD is not set.")
        return 2

    try:
        account = await services.identity.create_account(email, password)
        print(f"  Provider account created for {email} (uid {account.uid}).")
    except ProviderConflict:
        account = await services.identity.sign_in(email, password)
        await services.identity.sign_out()
        print(f"  Provider account for {email} already exists (uid {account.uid}).")

    existing = await services.records.get_or_none(Collection.USERS, account.uid)
    now = datetime.now(timezone.utc).isoformat()
    fields = {
        "email": email,
        "userId": account.uid,
        "role": ROLE_ADMIN,
        "isApproved": True,
        "permissions": services.resolver.full(),
        "updated_at": now,
    }
    if existing is None or not user_from_doc(existing).created_at:
        fields["created_at"] = now
    await services.records.merge_write(Collection.USERS, account.uid, fields)
    print(f"  users/{account.uid} is an approved admin.")

    if account.uid != settings.bootstrap_admin_uid:
        print(f"  [!] BOOTSTRAP_ADMIN_UID is {settings.bootstrap_admin_uid!r}; set it to {account.uid!r}.")
    _print_report(await services.sweep.run(), args.json)
    return 0


_COMMANDS = {
    "waitlist": _cmd_waitlist,
    "approve": _cmd_approve,
    "create-account": _cmd_create_account,
    "users": _cmd_users,
    "reconcile": _cmd_reconcile,
    "create-admin": _cmd_create_admin,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="accessgate",
        description="Waitlist approval and account provisioning.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py waitlist --status pending
  python main.py approve 3f2a9c...
  python main.py create-account 3f2a9c... --secret 'S3cretValue'
  python main.py reconcile --json
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", help="Output structured JSON")

    waitlist = sub.add_parser("waitlist", parents=[common], help="List waitlist entries, newest first")
    waitlist.add_argument("--status", choices=WAITLIST_STATUSES, default=None, help="Only show this status")

    approve = sub.add_parser("approve", parents=[common], help="Approve a pending waitlist entry")
    approve.add_argument("entry_id", metavar="ENTRY_ID")

    create_account = sub.add_parser("create-account", parents=[common], help="Create the account for an approved entry")
    create_account.add_argument("entry_id", metavar="ENTRY_ID")
    create_account.add_argument("--secret", default=None, help="Secret to set (generated when omitted)")

    sub.add_parser("users", parents=[common], help="Reconcile, then list users")
    sub.add_parser("reconcile", parents=[common], help="Run the reconciliation sweep")
    sub.add_parser("create-admin", parents=[common], help="Create the bootstrap admin account and record")
    return parser


async def run(args: argparse.Namespace, services: Optional[Services] = None) -> int:
    own_services = services is None
    services = services or build_services()
    try:
        return await _COMMANDS[args.command](services, args)
    except AccessGateError as exc:
        print(f"  [!] {exc}")
        return 1
    finally:
        if own_services:
            services.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if not args.command:
        parser.print_help()
        return 0
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
