"""Command-line interface for the ledger audit service."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from getpass import getpass
from typing import Sequence

from ledger_audit.config import Settings
from ledger_audit.database import Database
from ledger_audit.models import AuditStatus, Role

logger = logging.getLogger("ledger_audit.main")

_KNOWN_COMMANDS = {
    "serve",
    "init-db",
    "seed",
    "create-user",
    "set-role",
    "set-password",
    "purge-sessions",
    "sync-journals",
    "audit-journals",
}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ledger audit service utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Listen port (default: 8000)")
    serve_parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    subparsers.add_parser("init-db", help="Initialise the database schema")
    subparsers.add_parser("seed", help="Insert the sample company and admin account")

    user_parser = subparsers.add_parser("create-user", help="Create a login account")
    user_parser.add_argument("email", help="Unique email address for login")
    user_parser.add_argument("name", help="Display name for the user")
    user_parser.add_argument(
        "--role",
        choices=[role.value for role in Role],
        default=Role.USER.value,
        help="Account role (default: USER)",
    )
    user_parser.add_argument("--company", dest="company_id", default=None, help="Company identifier")

    role_parser = subparsers.add_parser("set-role", help="Change the role of an existing account")
    role_parser.add_argument("email", help="Email address of the account")
    role_parser.add_argument("role", choices=[role.value for role in Role], help="New role")

    password_parser = subparsers.add_parser("set-password", help="Reset the password of an existing account")
    password_parser.add_argument("email", help="Email address of the account")

    subparsers.add_parser("purge-sessions", help="Delete expired login sessions")

    sync_parser = subparsers.add_parser("sync-journals", help="Pull journals from the accounting API")
    sync_parser.add_argument("company_id", help="Company identifier to synchronise")
    sync_parser.add_argument("--start-date", type=date.fromisoformat, default=None, help="YYYY-MM-DD")
    sync_parser.add_argument("--end-date", type=date.fromisoformat, default=None, help="YYYY-MM-DD")

    audit_parser = subparsers.add_parser("audit-journals", help="Check synchronised journals for consistency")
    audit_parser.add_argument("--company", dest="company_id", default=None, help="Limit to one company")
    audit_parser.add_argument(
        "--status",
        choices=[AuditStatus.PENDING.value, AuditStatus.FAILED.value],
        default=AuditStatus.PENDING.value,
        help="Journals to check (default: PENDING)",
    )
    audit_parser.add_argument("--start-date", type=date.fromisoformat, default=None, help="YYYY-MM-DD")
    audit_parser.add_argument("--end-date", type=date.fromisoformat, default=None, help="YYYY-MM-DD")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    if not args_list:
        args_list = ["serve"]
    elif args_list[0] not in _KNOWN_COMMANDS and args_list[0] not in ("-h", "--help"):
        args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(*, settings: Settings, database: Database, host: str, port: int, reload: bool) -> None:
    from ledger_audit.service import create_app
    import uvicorn

    logger.info("Starting ledger audit service on http://%s:%s", host, port)
    if reload:
        uvicorn.run("ledger_audit:create_app", factory=True, host=host, port=port, reload=True, log_level="info")
        return
    uvicorn.run(create_app(database=database, settings=settings), host=host, port=port, log_level="info")


def _prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass("Password (min 8 characters): ")
        if len(password) < 8:
            print("Password is too short. Please try again.")
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _create_user(database: Database, args: argparse.Namespace) -> int:
    password = _prompt_for_password()
    if password is None:
        print("Aborted creating user.", file=sys.stderr)
        return 1

    try:
        user = database.create_user(
            args.email,
            password,
            name=args.name.strip(),
            role=Role(args.role),
            company_id=args.company_id,
        )
    except ValueError as exc:
        print(f"Failed to create user: {exc}", file=sys.stderr)
        return 1

    print(f"Created user #{user.id}: {user.name} <{user.email}> ({user.role.value})")
    return 0


def _set_role(database: Database, args: argparse.Namespace) -> int:
    user = database.get_user_by_email(args.email)
    if user is None:
        print(f"Unknown user: {args.email}", file=sys.stderr)
        return 1

    updated = database.update_user_role(user.id, Role(args.role))
    print(f"{updated.email} is now {updated.role.value}")
    return 0


def _set_password(database: Database, args: argparse.Namespace) -> int:
    user = database.get_user_by_email(args.email)
    if user is None:
        print(f"Unknown user: {args.email}", file=sys.stderr)
        return 1

    password = _prompt_for_password()
    if password is None:
        print("Aborted password change.", file=sys.stderr)
        return 1

    database.set_user_password(user.id, password)
    print(f"Password updated for {user.email}")
    return 0


def _sync_journals(settings: Settings, database: Database, args: argparse.Namespace) -> int:
    from ledger_audit.audit_log import AuditLogger
    from ledger_audit.errors import ValidationError
    from ledger_audit.freee import FreeeAPIError, FreeeClient, FreeeCredentials, sync_journals
    from ledger_audit.token_store import OAuthTokenStore

    company = database.get_company(args.company_id)
    if company is None:
        print(f"Unknown company: {args.company_id}", file=sys.stderr)
        return 1

    client = FreeeClient(
        FreeeCredentials(
            client_id=settings.freee_client_id,
            client_secret=settings.freee_client_secret,
            redirect_uri=settings.freee_redirect_uri,
            mock_mode=settings.freee_mock_mode,
        ),
        token_store=OAuthTokenStore(database, encryption_key=settings.encryption_key),
        audit=AuditLogger(database),
    )
    try:
        synced = sync_journals(
            database,
            client,
            company,
            start_date=args.start_date.isoformat() if args.start_date else None,
            end_date=args.end_date.isoformat() if args.end_date else None,
        )
    except (FreeeAPIError, ValidationError) as exc:
        print(f"Journal sync failed: {exc}", file=sys.stderr)
        return 1
    finally:
        client.close()

    print(f"Synchronised {synced} journal(s) for {company.name}")
    return 0


def _audit_journals(database: Database, args: argparse.Namespace) -> int:
    from ledger_audit.audit_log import AuditLogger
    from ledger_audit.journal_checker import JournalChecker, run_audit

    if args.company_id and database.get_company(args.company_id) is None:
        print(f"Unknown company: {args.company_id}", file=sys.stderr)
        return 1

    result = run_audit(
        database,
        JournalChecker(),
        company_id=args.company_id,
        status=AuditStatus(args.status),
        start_date=args.start_date,
        end_date=args.end_date,
        audit=AuditLogger(database),
    )
    print(
        f"Audited {result.processed} journal(s): {result.passed} passed,"
        f" {result.failed} failed, {result.skipped} skipped"
    )
    for journal_id, issues in result.failures.items():
        for issue in issues:
            print(f"  {journal_id} [{issue.severity}] {issue.message_en}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    args = _parse_args(argv)
    settings = Settings.from_env()
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(settings=settings, database=database, host=args.host, port=args.port, reload=args.reload)
    elif args.command == "init-db":
        print("Database initialisation complete.")
    elif args.command == "seed":
        from ledger_audit.seed import seed_database

        result = seed_database(database)
        print(f"Seeded {result.company.name} with administrator {result.admin.email}")
    elif args.command == "create-user":
        return _create_user(database, args)
    elif args.command == "set-role":
        return _set_role(database, args)
    elif args.command == "set-password":
        return _set_password(database, args)
    elif args.command == "purge-sessions":
        from ledger_audit.sessions import SessionStore

        purged = SessionStore(database).purge_expired()
        print(f"Removed {purged} expired session(s)")
    elif args.command == "sync-journals":
        return _sync_journals(settings, database, args)
    elif args.command == "audit-journals":
        return _audit_journals(database, args)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
