#!/usr/bin/env python3
"""
Portal auth service - API server and admin helpers.
"""

import argparse
import getpass
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep portal imports lazy (inside functions) so admin helpers don't import the web stack.
#


def migrate() -> int:
    from portal.db.config import build_postgres_dsn, load_database_config
    from portal.db.migrate import apply_migrations

    dsn = build_postgres_dsn(load_database_config())
    if not dsn:
        print("Postgres not configured (set DATABASE_URL or POSTGRES_* env vars).")
        return 2
    n, versions = apply_migrations(dsn=dsn)
    if n:
        print(f"Applied {n} migration(s): {', '.join(versions)}")
    else:
        print("No pending migrations.")
    return 0


def set_demo_password(email: str) -> int:
    """Set the demo login password for an existing user (prompted, never taken from argv)."""
    import psycopg

    from portal.auth.local import set_password
    from portal.db.config import build_postgres_dsn, load_database_config

    dsn = build_postgres_dsn(load_database_config())
    if not dsn:
        print("Postgres not configured (set DATABASE_URL or POSTGRES_* env vars).")
        return 2
    password = getpass.getpass(f"New password for {email}: ")
    if not password or password != getpass.getpass("Repeat password: "):
        print("Passwords are empty or do not match.")
        return 1
    with psycopg.connect(dsn) as conn:
        if not set_password(conn, email, password):
            print(f"No user with email {email}")
            return 1
    print(f"Password updated for {email}")
    return 0


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Portal session authentication service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the API server
  python main.py --serve --port 8080

  # Create the users/sessions tables
  python main.py --migrate

  # Set a demo login password
  python main.py --set-password admin@example.com
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API server")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--migrate", action="store_true", help="Apply pending database migrations and exit")
    parser.add_argument("--set-password", metavar="EMAIL", help="Set the demo login password for a user")

    args = parser.parse_args()

    try:
        if args.migrate:
            return migrate()

        if args.set_password:
            return set_demo_password(args.set_password)

        if args.serve:
            from portal.api.server import run

            run(host=args.host, port=args.port)
            return 0

        parser.print_help()
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
