from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional


def _migration_1(conn):
    cur = conn.cursor()
    # Prices and quantities are Decimal strings; never compare them in SQL.
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS positions (
            id TEXT PRIMARY KEY,
            instrument TEXT NOT NULL,
            quantity TEXT NOT NULL,
            stop_percent TEXT NOT NULL,
            entry_price TEXT NOT NULL,
            high_water_mark TEXT NOT NULL,
            entry_order_ref TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL CHECK (status IN ('active', 'completed', 'manual', 'errored')),
            exit_price TEXT,
            exit_profit_percent TEXT,
            exit_order_ref TEXT,
            error_reason TEXT,
            exit_claim TEXT,
            opened_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    # at most one active position per instrument
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_positions_active_instrument "
        "ON positions(instrument) WHERE status = 'active'"
    )


def _migration_1_down(conn):
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS uq_positions_active_instrument")
    cur.execute("DROP TABLE IF EXISTS positions")


def _migration_2(conn):
    """Append-only audit trail of position state changes."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS position_events (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            position_id TEXT NOT NULL,
            event TEXT NOT NULL,
            detail TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_events_position_id ON position_events(position_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status)")


def _migration_2_down(conn):
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS idx_positions_status")
    cur.execute("DROP INDEX IF EXISTS idx_events_position_id")
    cur.execute("DROP TABLE IF EXISTS position_events")


MIGRATIONS: Dict[int, Callable] = {
    1: _migration_1,
    2: _migration_2,
}

MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _migration_1_down,
    2: _migration_2_down,
}


def _ensure_version_table(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()


def applied_versions(conn) -> Dict[int, str]:
    """Return ``{version: applied_at}`` for migrations already applied."""
    _ensure_version_table(conn)
    cur = conn.execute("SELECT version, applied_at FROM schema_migrations ORDER BY version")
    return {row[0]: row[1] for row in cur.fetchall()}


def pending_versions(conn) -> List[int]:
    applied = applied_versions(conn)
    return sorted(v for v in MIGRATIONS if v not in applied)


def apply_migrations(conn) -> List[int]:
    """Apply pending migrations to the given sqlite3 connection.

    Returns the list of applied migration versions.
    """
    applied_now = []
    for v in pending_versions(conn):
        # each migration runs in its own transaction
        try:
            conn.execute("BEGIN IMMEDIATE")
            MIGRATIONS[v](conn)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)",
                (v, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
            applied_now.append(v)
        except Exception:
            conn.rollback()
            raise

    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Rollback a specific migration version if a down migration is registered."""
    if version not in MIGRATION_DOWNS:
        raise RuntimeError(f"No down migration registered for version {version}")

    try:
        conn.execute("BEGIN IMMEDIATE")
        MIGRATION_DOWNS[version](conn)
        conn.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def rollback_last(conn) -> Optional[int]:
    """Rollback the latest applied migration; returns the version or None."""
    applied = applied_versions(conn)
    if not applied:
        return None
    v = max(applied)
    rollback_migration(conn, v)
    return v
