#!/usr/bin/env python3
"""
Storefront API - authentication, sessions and admin back-office.
"""

import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep storefront imports lazy (inside functions) so maintenance modes don't
# import the web stack.
#


def migrate() -> int:
    from storefront.db.config import build_postgres_dsn, load_db_config
    from storefront.db.migrate import apply_migrations

    dsn = build_postgres_dsn(load_db_config())
    if not dsn:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).")
        return 2
    n, versions = apply_migrations(dsn=dsn)
    if n:
        print(f"Applied {n} migration(s): {', '.join(versions)}")
    else:
        print("No pending migrations.")
    return 0


def purge_sessions() -> int:
    """Delete expired session rows (lookups already ignore them; this only reclaims space)."""
    from storefront.auth.session import purge_expired_sessions
    from storefront.db.connection import connect

    conn = connect()
    if conn is None:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).")
        return 2
    try:
        removed = purge_expired_sessions(conn)
    finally:
        conn.close()
    print(f"Removed {removed} expired session(s).")
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Storefront API server and maintenance commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Apply pending SQL migrations
  python main.py --migrate

  # Run the API server
  python main.py --serve --port 8080

  # Remove expired sessions (e.g. from a nightly cron job)
  python main.py --purge-sessions
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API server")
    parser.add_argument("--migrate", action="store_true", help="Apply pending database migrations and exit")
    parser.add_argument("--purge-sessions", action="store_true", help="Delete expired sessions and exit")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")

    args = parser.parse_args()

    try:
        if args.migrate:
            sys.exit(migrate())

        if args.purge_sessions:
            sys.exit(purge_sessions())

        if args.serve:
            from storefront.api.app import run

            run(host=args.host, port=args.port)
            return

        parser.print_help()

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
