"""Command-line interface for the agency console account service."""

from __future__ import annotations
import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from agency_console.config import ConsoleSettings, load_settings
from agency_console.database import Database, DuplicateAccountError, resolve_database_path
from agency_console.models import Role

logger = logging.getLogger("agency_console.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Agency console account utilities")
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to the YAML configuration (defaults to CONSOLE_CONFIG_PATH or config/console.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the account database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP account service")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the HTTP API (default: 8000)",
    )
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    admin_parser = subparsers.add_parser(
        "create-admin", help="Register an approved administrator account"
    )
    admin_parser.add_argument("user_id", help="Identity provider user id of the administrator")
    admin_parser.add_argument("--name", default=None, help="Display name for the administrator")
    admin_parser.add_argument("--email", default=None, help="Email address for the administrator")

    subparsers.add_parser("accounts", help="List accounts and their lifecycle state")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "create-admin", "accounts"}

    # Global options come before the subcommand; find the first positional.
    index = 0
    while index < len(args_list) and args_list[index] == "--config":
        index += 2
    prefix, rest = args_list[:index], args_list[index:]

    if not rest:
        rest = ["serve"]
    else:
        first = rest[0]
        if first in ("-h", "--help"):
            return parser.parse_args([*prefix, *rest])
        if first not in known_commands:
            if any(flag in rest for flag in ("-h", "--help")):
                return parser.parse_args([*prefix, *rest])
            rest = ["serve", *rest]

    return parser.parse_args([*prefix, *rest])


def _load_settings(config_path: str | None) -> ConsoleSettings:
    return load_settings(Path(config_path).expanduser() if config_path else None)


def _initialise_database(settings: ConsoleSettings) -> Database:
    db_path = settings.database_path or resolve_database_path(None)
    database = Database(db_path)
    database.initialize()
    logger.info("Database initialised at %s", db_path)
    return database


def _serve(
    *,
    settings: ConsoleSettings,
    database: Database,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from agency_console.application import build_service
    from agency_console.api import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")
    if not settings.api_tokens:
        raise SystemExit(
            "No API tokens configured. Set api_tokens in the configuration file "
            "or CONSOLE_API_TOKENS before starting the service."
        )

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting account API on %s://%s:%s", protocol, host, port)

    service = build_service(settings, database=database)
    app = create_app(service=service, settings=settings)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _create_admin(
    database: Database,
    settings: ConsoleSettings,
    user_id: str,
    *,
    name: str | None,
    email: str | None,
) -> int:
    from agency_console.service import LifecycleService

    service = LifecycleService(database, settings=settings)
    try:
        service.register(user_id.strip(), user_name=name, email=email, role=Role.ADMIN)
    except DuplicateAccountError as exc:
        print(f"Failed to create administrator: {exc}")
        return 1
    account = service.approve(user_id.strip(), actor_id=None)
    print(f"Created administrator {account.display_name} ({account.employee_id})")
    return 0


def _list_accounts(database: Database) -> None:
    listing = database.list_accounts()
    if not listing.accounts:
        print("No accounts are currently registered.")
        return

    print(f"{len(listing.accounts)} account(s) at revision {listing.revision}:")
    print(f"{'User':<24}  {'Role':<9}  {'State':<18}  {'Employee ID':<20}  Created")
    print("-" * 96)
    for account in listing.accounts:
        created = account.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")
        employee_id = account.employee_id or "-"
        print(
            f"{account.display_name:<24}  {account.role.value:<9}  "
            f"{account.lifecycle_label:<18}  {employee_id:<20}  {created}"
        )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    args = _parse_args(argv)
    settings = _load_settings(args.config_path)
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(
            settings=settings,
            database=database,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
    elif args.command == "create-admin":
        return _create_admin(database, settings, args.user_id, name=args.name, email=args.email)
    elif args.command == "accounts":
        _list_accounts(database)
    elif args.command == "init-db":
        print("Database initialisation complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
