import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from agency_console.database import Database, DuplicateAccountError, resolve_database_path
from agency_console.models import Role
from agency_console.service import LifecycleService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bootstrap an approved agency console administrator")
    parser.add_argument("user_id", help="Identity provider user id of the administrator")
    parser.add_argument("--name", default=None, help="Display name for the administrator")
    parser.add_argument("--email", default=None, help="Email address for the administrator")
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to CONSOLE_DB_PATH or data/console.sqlite3)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    db_env = args.db_path or os.getenv("CONSOLE_DB_PATH")
    db_path = resolve_database_path(db_env)

    database = Database(db_path)
    database.initialize()
    service = LifecycleService(database)

    user_id = args.user_id.strip()
    email = args.email.strip().lower() if args.email else None
    try:
        service.register(user_id, user_name=args.name, email=email, role=Role.ADMIN)
    except DuplicateAccountError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    account = service.approve(user_id, actor_id=None)
    print(f"Created administrator {account.display_name} with employee id {account.employee_id}")
    print("Map an API token to this user id (api_tokens or CONSOLE_API_TOKENS) to use the HTTP API.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
