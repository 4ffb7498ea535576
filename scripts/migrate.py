#!/usr/bin/env python
"""Migration CLI: list, apply, rollback schema migrations of the position store.

Usage (examples):

python scripts/migrate.py --db state/trailbot.db list
python scripts/migrate.py --db state/trailbot.db apply --dry-run
python scripts/migrate.py --db state/trailbot.db rollback --version 2 --yes
python scripts/migrate.py --db state/trailbot.db rollback --last
"""
import argparse
import os
import sys
from pathlib import Path

# Ensure project root is on sys.path so `trailbot` is importable when running as a script.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from trailbot.db_encryption import get_connection
from trailbot.db_migrations import (
    MIGRATIONS,
    applied_versions,
    apply_migrations,
    pending_versions,
    rollback_last,
    rollback_migration,
)


def list_migrations(conn):
    applied = applied_versions(conn)
    print("Available migrations:")
    for v in sorted(MIGRATIONS.keys()):
        status = "applied" if v in applied else "pending"
        print(f"  {v}: {status} (applied_at={applied.get(v, '-')})")


def _confirm(prompt: str) -> bool:
    try:
        return input(f"{prompt} This may DROP data. Type 'yes' to continue: ").strip().lower() == "yes"
    except (EOFError, BrokenPipeError):
        # non-interactive stdin
        return True


def main(argv=None):
    parser = argparse.ArgumentParser(description="Position store migrations")
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    parser.add_argument(
        "--password-env",
        default="TRAILBOT_DB_PASSWORD",
        help="Environment variable holding the sqlcipher password (if encrypted)",
    )
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    rb.add_argument("--version", type=int, help="Rollback a specific migration version")
    rb.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show what would be rolled back")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    args = parser.parse_args(argv)
    if args.cmd is None:
        parser.print_help()
        return 1

    db = Path(args.db)
    db.parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db, password=os.getenv(args.password_env))

    try:
        if args.cmd == "list":
            list_migrations(conn)
            return 0

        if args.cmd == "apply":
            if args.dry_run:
                pending = pending_versions(conn)
                print(f"Pending migrations: {pending}" if pending else "No pending migrations; database up-to-date.")
                return 0
            applied = apply_migrations(conn)
            print(f"Applied migrations: {applied}" if applied else "No migrations applied; database up-to-date.")
            return 0

        if args.version:
            if args.dry_run:
                print(f"Would rollback migration {args.version} (dry-run)")
                return 0
            if not args.yes and not _confirm(f"Rollback migration {args.version}?"):
                print("Aborted.")
                return 1
            rollback_migration(conn, args.version)
            print(f"Rolled back migration {args.version}")
            return 0

        if args.last:
            applied = applied_versions(conn)
            if not applied:
                print("No applied migrations to rollback")
                return 0
            latest = max(applied)
            if args.dry_run:
                print(f"Would rollback migration {latest} (dry-run)")
                return 0
            if not args.yes and not _confirm(f"Rollback the last migration {latest}?"):
                print("Aborted.")
                return 1
            print(f"Rolled back migration {rollback_last(conn)}")
            return 0

        parser.print_help()
        return 1
    finally:
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
