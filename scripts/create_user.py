import argparse
import getpass
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from auralynk.database import Database, resolve_database_path
from auralynk.models import Role


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create an Auralynk client or reader account")
    parser.add_argument("role", choices=[role.value for role in Role], help="Account role")
    parser.add_argument("name", help="Display name shown on bookings")
    parser.add_argument("email", help="Unique email address for login and confirmations")
    parser.add_argument("--bio", default="", help="Short profile text for readers")
    parser.add_argument(
        "--service",
        dest="services",
        action="append",
        default=[],
        help="Service offered by a reader (repeatable)",
    )
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to AURALYNK_DB_PATH or data/auralynk.sqlite3)",
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
    if args.services and args.role != Role.READER.value:
        print("Error: only readers can list services", file=sys.stderr)
        return 1
    password = prompt_for_password()

    db_env = args.db_path or os.getenv("AURALYNK_DB_PATH")
    database = Database(resolve_database_path(db_env))
    database.initialize()

    try:
        user = database.create_user(
            args.role,
            args.name,
            args.email,
            password,
            bio=args.bio,
            services=args.services,
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created {user.role.value} #{user.id}: {user.display_name} <{user.email}>")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
