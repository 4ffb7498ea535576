import json
import sqlite3
import threading
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .db_encryption import get_connection
from .exceptions import PersistenceError
from .position import Position, PositionStatus, utcnow


class ActivePositionExists(PersistenceError):
    """Insert refused by the one-active-position-per-instrument index."""
    pass


_COLUMNS = (
    "id, instrument, quantity, stop_percent, entry_price, high_water_mark, "
    "entry_order_ref, status, exit_price, exit_profit_percent, exit_order_ref, "
    "error_reason, exit_claim, opened_at, updated_at"
)


def _s(value) -> Optional[str]:
    return str(value) if value is not None else None


class PositionStore:
    """SQLite-backed store of positions with conditional state transitions.

    Every transition out of ``active`` is a single conditional UPDATE
    (``... WHERE status = 'active' AND exit_claim = ?``); the returned
    boolean says whether this caller won. Callers never read-modify-write
    a row outside a transaction.

    Writes run under ``BEGIN IMMEDIATE`` and append to ``position_events``
    in the same transaction. The connection is shared by worker threads
    (``asyncio.to_thread``) so access is serialised with a lock.
    """

    def __init__(self, path: Path, password: Optional[str] = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = get_connection(self.path, password=password, timeout=30)
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        from .db_migrations import apply_migrations

        with self._lock:
            apply_migrations(self.conn)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except Exception:
                self.conn.rollback()
                raise
            self.conn.commit()

    def _query(self, sql: str, params=()) -> List[Position]:
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [Position.from_row(r) for r in rows]

    def _query_one(self, sql: str, params=()) -> Optional[Position]:
        rows = self._query(sql, params)
        return rows[0] if rows else None

    @staticmethod
    def _record_event(cur, position_id: str, event: str, now: str, **detail) -> None:
        cur.execute(
            "INSERT INTO position_events(position_id, event, detail, created_at) VALUES(?, ?, ?, ?)",
            (position_id, event, json.dumps(detail, default=str) if detail else None, now),
        )

    # --- Create ---
    def create_position(self, pos: Position) -> Position:
        """Insert a new active position.

        Raises:
            ActivePositionExists: If the instrument already has an active row
        """
        now = utcnow().isoformat()
        try:
            with self._transaction() as cur:
                cur.execute(
                    f"INSERT INTO positions({_COLUMNS}) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        pos.id, pos.instrument, str(pos.quantity), str(pos.stop_percent),
                        str(pos.entry_price), str(pos.high_water_mark), pos.entry_order_ref,
                        pos.status.value, _s(pos.exit_price), _s(pos.exit_profit_percent),
                        pos.exit_order_ref, pos.error_reason, pos.exit_claim,
                        pos.opened_at.isoformat(), now,
                    ),
                )
                self._record_event(
                    cur, pos.id, "opened", now,
                    quantity=pos.quantity, entry_price=pos.entry_price, order_ref=pos.entry_order_ref,
                )
        except sqlite3.IntegrityError as e:
            if "positions.instrument" not in str(e):
                raise
            raise ActivePositionExists(
                f"{pos.instrument} already has an active position", order_ref=pos.entry_order_ref
            ) from e
        return self.get(pos.id)

    def upsert_position(self, pos: Position) -> Position:
        """Insert ``pos`` unless a row with the same ``entry_order_ref`` exists.

        Idempotent: re-applying the same opening trade returns the stored row.
        """
        existing = self.get_by_entry_order_ref(pos.entry_order_ref)
        if existing:
            return existing
        try:
            return self.create_position(pos)
        except sqlite3.IntegrityError:
            # lost a race with another writer of the same order ref
            return self.get_by_entry_order_ref(pos.entry_order_ref)

    # --- Reads ---
    def get(self, position_id: str) -> Optional[Position]:
        return self._query_one(f"SELECT {_COLUMNS} FROM positions WHERE id = ?", (position_id,))

    def get_by_entry_order_ref(self, order_ref: str) -> Optional[Position]:
        return self._query_one(
            f"SELECT {_COLUMNS} FROM positions WHERE entry_order_ref = ?", (order_ref,)
        )

    def get_active(self, instrument: str) -> Optional[Position]:
        return self._query_one(
            f"SELECT {_COLUMNS} FROM positions WHERE instrument = ? AND status = 'active'",
            (instrument,),
        )

    def list_by_status(self, *statuses: PositionStatus) -> List[Position]:
        marks = ", ".join("?" for _ in statuses)
        return self._query(
            f"SELECT {_COLUMNS} FROM positions WHERE status IN ({marks}) ORDER BY opened_at",
            tuple(s.value for s in statuses),
        )

    def list_active(self) -> List[Position]:
        return self.list_by_status(PositionStatus.ACTIVE)

    def list_history(self) -> List[Position]:
        """Every position that has left ``active``, newest first."""
        return self._query(
            f"SELECT {_COLUMNS} FROM positions WHERE status != 'active' ORDER BY updated_at DESC"
        )

    def list_all(self) -> List[Position]:
        return self._query(f"SELECT {_COLUMNS} FROM positions ORDER BY opened_at DESC")

    def count_active(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) FROM positions WHERE status = 'active'").fetchone()
        return int(row[0])

    def list_claimed_active(self) -> List[Position]:
        """Active rows holding an exit claim, i.e. an exit attempt never finished."""
        return self._query(
            f"SELECT {_COLUMNS} FROM positions WHERE status = 'active' AND exit_claim IS NOT NULL"
        )

    def list_events(self, position_id: str) -> List[Dict]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT event, detail, created_at FROM position_events WHERE position_id = ? ORDER BY seq",
                (position_id,),
            ).fetchall()
        return [
            {"event": r[0], "detail": json.loads(r[1]) if r[1] else {}, "created_at": r[2]}
            for r in rows
        ]

    # --- Conditional updates ---
    def raise_high_water_mark(self, position_id: str, price: Decimal) -> Optional[Decimal]:
        """Set ``high_water_mark = max(stored, price)`` for an active row.

        Returns the resulting high-water mark, or None when the row is no
        longer active.
        """
        now = utcnow().isoformat()
        with self._transaction() as cur:
            row = cur.execute(
                "SELECT high_water_mark FROM positions WHERE id = ? AND status = 'active'",
                (position_id,),
            ).fetchone()
            if row is None:
                return None
            current = Decimal(row[0])
            if price <= current:
                return current
            cur.execute(
                "UPDATE positions SET high_water_mark = ?, updated_at = ? WHERE id = ?",
                (str(price), now, position_id),
            )
            self._record_event(cur, position_id, "high_water_mark", now, previous=current, new=price)
        return price

    def claim_exit(self, position_id: str, token: str) -> bool:
        """Take the exclusive right to submit the exit order for an active row."""
        now = utcnow().isoformat()
        with self._transaction() as cur:
            cur.execute(
                "UPDATE positions SET exit_claim = ?, updated_at = ? "
                "WHERE id = ? AND status = 'active' AND exit_claim IS NULL",
                (token, now, position_id),
            )
            won = cur.rowcount == 1
            if won:
                self._record_event(cur, position_id, "exit_claimed", now, token=token)
        return won

    def release_exit_claim(self, position_id: str, token: str) -> bool:
        now = utcnow().isoformat()
        with self._transaction() as cur:
            cur.execute(
                "UPDATE positions SET exit_claim = NULL, updated_at = ? "
                "WHERE id = ? AND status = 'active' AND exit_claim = ?",
                (now, position_id, token),
            )
            released = cur.rowcount == 1
            if released:
                self._record_event(cur, position_id, "exit_released", now, token=token)
        return released

    def close_position(
        self,
        position_id: str,
        token: str,
        status: PositionStatus,
        exit_price: Decimal,
        exit_profit_percent: Decimal,
        exit_order_ref: Optional[str],
    ) -> bool:
        """Transition ``active -> completed|manual`` for the holder of ``token``."""
        if not status.is_closed:
            raise ValueError(f"{status.value} is not a closing status")
        now = utcnow().isoformat()
        with self._transaction() as cur:
            cur.execute(
                "UPDATE positions SET status = ?, exit_price = ?, exit_profit_percent = ?, "
                "exit_order_ref = ?, exit_claim = NULL, updated_at = ? "
                "WHERE id = ? AND status = 'active' AND exit_claim = ?",
                (
                    status.value, str(exit_price), str(exit_profit_percent),
                    exit_order_ref, now, position_id, token,
                ),
            )
            won = cur.rowcount == 1
            if won:
                self._record_event(
                    cur, position_id, status.value, now,
                    exit_price=exit_price, profit_percent=exit_profit_percent, order_ref=exit_order_ref,
                )
        return won

    def mark_errored(self, position_id: str, reason: str, token: Optional[str] = None) -> bool:
        """Transition ``active -> errored``; with ``token`` only for its holder."""
        now = utcnow().isoformat()
        sql = (
            "UPDATE positions SET status = 'errored', error_reason = ?, exit_claim = NULL, "
            "updated_at = ? WHERE id = ? AND status = 'active'"
        )
        params = [reason, now, position_id]
        if token is not None:
            sql += " AND exit_claim = ?"
            params.append(token)
        with self._transaction() as cur:
            cur.execute(sql, params)
            won = cur.rowcount == 1
            if won:
                self._record_event(cur, position_id, "errored", now, reason=reason)
        return won

    def delete_position(self, position_id: str) -> bool:
        """Administrative delete; the lifecycle never calls this."""
        now = utcnow().isoformat()
        with self._transaction() as cur:
            cur.execute("DELETE FROM positions WHERE id = ?", (position_id,))
            deleted = cur.rowcount == 1
            if deleted:
                self._record_event(cur, position_id, "deleted", now)
        return deleted

    def close(self):
        with self._lock:
            self.conn.close()
