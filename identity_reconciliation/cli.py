from __future__ import annotations

import argparse

from .config import get_settings
from .db_setup import create_store, init_db
from .logging_config import setup_logging


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.log_json)

    if args.command == "migrate":
        database_url = args.database_url or settings.DATABASE_URL
        init_db(create_store(database_url, lock_timeout=settings.DB_LOCK_TIMEOUT_SECONDS))
        return

    if args.command == "serve":
        from .main import run

        run(host=args.host, port=args.port)
        return

    parser.print_help()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Contact identity reconciliation service")
    subparsers = parser.add_subparsers(dest="command")

    migrate = subparsers.add_parser("migrate", help="Create the contacts table and its indexes")
    migrate.add_argument("--database-url", default=None, help="Overrides DATABASE_URL")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    return parser


if __name__ == "__main__":
    main()
