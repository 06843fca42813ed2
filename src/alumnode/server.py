from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import TextIO

from aiohttp import web

from .config import Settings, load_settings_from_env
from .errors import AlumNodeError
from .models import ROLE_ADMIN, ROLES, to_api_dict
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteStore
from .transport import create_app
from .users import UserDirectory

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)


def _run_serve(args: argparse.Namespace, settings: Settings) -> int:
    if args.db is not None:
        settings = replace(settings, db_path=args.db)
    app = create_app(settings=settings)
    logger.info("serving on %s:%s (db=%s)", args.host, args.port, settings.db_path or ":memory:")
    web.run_app(app, host=args.host, port=args.port, print=None)
    return 0


async def _create_user(db_path: str, name: str, email: str, role: str) -> dict:
    store = SQLiteStore(SQLiteBackend(db_path))
    try:
        user = await UserDirectory(store).register(name=name, email=email, role=role, is_verified=True)
        return to_api_dict(user)
    finally:
        store.close()


def _run_create_user(args: argparse.Namespace, settings: Settings, output: TextIO) -> int:
    db_path = args.db or settings.db_path
    if not db_path:
        print("create-user needs --db or ALUMNODE_DB_PATH", file=sys.stderr)
        return 2
    try:
        user = asyncio.run(_create_user(db_path, args.name, args.email, args.role))
    except AlumNodeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    output.write(json.dumps(user, sort_keys=True) + "\n")
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="AlumNode messaging server")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    user_parser = subparsers.add_parser("create-user", help="Register a user directly in the database")
    user_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database")
    user_parser.add_argument("--name", required=True)
    user_parser.add_argument("--email", required=True)
    user_parser.add_argument("--role", choices=sorted(ROLES), default=ROLE_ADMIN)

    args = parser.parse_args(argv)
    settings = load_settings_from_env()
    configure_logging(settings)

    if args.command == "serve":
        return _run_serve(args, settings)
    return _run_create_user(args, settings, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
