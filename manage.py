#!/usr/bin/env python3
"""
Shebamiles -- operator commands.

Usage:
  python manage.py init-db
  python manage.py create-admin --email admin@example.com --username admin \\
                                --first-name Ada --last-name Lovelace
  python manage.py purge
  python manage.py purge --log-days 90

Configuration comes from the same SHEBAMILES_* environment variables (or .env)
as the API server; see core/config.py.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.flows import create_account
from auth.ratelimit import DatabaseRateLimitBackend, RateLimiter
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import get_settings
from core.database import connect_with_retry, create_db_engine
from core.errors import ApiError, DatabaseUnavailableError, ValidationError
from core.log import DatabaseLogHandler, configure_logging, purge_old_logs


def _engine():
    settings = get_settings()
    engine = create_db_engine(settings.resolved_database_url)
    connect_with_retry(engine, settings.db_connect_retries, settings.db_retry_delay)
    return engine


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create every table. Idempotent."""
    engine = _engine()
    users = UserStore(engine)
    SessionStore(engine)
    DatabaseRateLimitBackend(engine)
    DatabaseLogHandler(engine).close()
    print("  Database tables are ready.")
    if not users.has_users():
        print("  No users yet. Run create-admin to add the first administrator.")
    return 0


def cmd_create_admin(args: argparse.Namespace) -> int:
    """Create an admin account. The password is prompted, never passed as an argument."""
    password = getpass.getpass("  Password: ")
    confirm = getpass.getpass("  Confirm password: ")
    payload = {
        "email": args.email,
        "username": args.username,
        "first_name": args.first_name,
        "last_name": args.last_name,
        "password": password,
        "confirm_password": confirm,
    }
    users = UserStore(_engine())
    try:
        user = create_account(payload, users, role="admin")
    except ValidationError as exc:
        print(f"  [!] {exc.message}")
        for field, rules in exc.errors.items():
            for message in rules.values():
                print(f"      {field}: {message}")
        return 1
    except ApiError as exc:
        print(f"  [!] {exc.message}")
        return 1
    print(f"  Admin '{user.username}' created (id={user.id}).")
    return 0


def cmd_purge(args: argparse.Namespace) -> int:
    """Delete expired sessions, week-old rate-limit records and old audit logs."""
    settings = get_settings()
    engine = _engine()
    sessions = SessionStore(engine, default_timeout=settings.session_timeout_seconds).purge_expired()
    records = RateLimiter(DatabaseRateLimitBackend(engine)).cleanup()
    logs = purge_old_logs(engine, args.log_days if args.log_days is not None else settings.log_retention_days)
    print(f"  Removed {sessions} expired sessions, {records} rate-limit records, {logs} log entries.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="shebamiles-manage",
        description="Operator commands for the Shebamiles HR portal backend.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    init_db = sub.add_parser("init-db", help="Create database tables")
    init_db.set_defaults(func=cmd_init_db)

    admin = sub.add_parser("create-admin", help="Create an administrator account (password prompted)")
    admin.add_argument("--email", required=True)
    admin.add_argument("--username", required=True)
    admin.add_argument("--first-name", required=True, dest="first_name")
    admin.add_argument("--last-name", required=True, dest="last_name")
    admin.set_defaults(func=cmd_create_admin)

    purge = sub.add_parser("purge", help="Remove expired sessions, rate-limit records and old logs")
    purge.add_argument(
        "--log-days",
        type=int,
        default=None,
        metavar="N",
        help="Delete audit log entries older than N days (default: SHEBAMILES_LOG_RETENTION_DAYS)",
    )
    purge.set_defaults(func=cmd_purge)

    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_dir)
    try:
        return args.func(args)
    except DatabaseUnavailableError as exc:
        print(f"  [!] {exc.message}. Check SHEBAMILES_DB_* settings.")
        return 2


if __name__ == "__main__":
    sys.exit(main())
