import argparse
import getpass
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ledger_audit.database import Database, resolve_database_path
from ledger_audit.models import Role


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a ledger audit login account")
    parser.add_argument("name", help="Display name for the user")
    parser.add_argument("email", help="Unique email address for login")
    parser.add_argument("--admin", action="store_true", help="Grant the ADMIN role")
    parser.add_argument("--company", dest="company_id", default=None, help="Company identifier")
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to LEDGER_AUDIT_DB_PATH or data/ledger_audit.sqlite3)",
    )
    return parser.parse_args()


def prompt_for_password() -> str:
    for _ in range(3):
        password = getpass.getpass("Password: ")
        confirm = getpass.getpass("Confirm password: ")
        if password != confirm:
            print("Passwords do not match. Try again.", file=sys.stderr)
            continue
        if len(password) < 8:
            print("Password must be at least 8 characters long.", file=sys.stderr)
            continue
        return password
    raise SystemExit("Failed to set password after three attempts.")


def main() -> int:
    args = parse_args()
    password = prompt_for_password()

    db_path = resolve_database_path(args.db_path or os.getenv("LEDGER_AUDIT_DB_PATH"))
    database = Database(db_path)
    database.initialize()

    try:
        user = database.create_user(
            args.email,
            password,
            name=args.name.strip(),
            role=Role.ADMIN if args.admin else Role.USER,
            company_id=args.company_id,
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created user #{user.id}: {user.name} <{user.email}> ({user.role.value})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
