"""Tests for operational CLI tools: position_status, trade_history."""
import subprocess
import sys
from decimal import Decimal
from pathlib import Path

import pytest

from trailbot.persistence_sqlite import PositionStore
from trailbot.position import PositionStatus

from conftest import make_position

SCRIPTS = Path(__file__).resolve().parents[1] / "scripts"


def run_script(name, db_path, args):
    cmd = [sys.executable, str(SCRIPTS / name), "--db", str(db_path)] + args
    res = subprocess.run(cmd, capture_output=True, text=True, stdin=subprocess.DEVNULL)
    return res.returncode, res.stdout


@pytest.fixture
def seeded_db(tmp_path):
    """A store with one active, one stopped-out, one manual and one errored position."""
    db_path = tmp_path / "ops.db"
    store = PositionStore(db_path)

    store.create_position(make_position(id="active-1", instrument="SOLUSD", entry_order_ref="B1"))

    store.create_position(make_position(id="won-1", instrument="ABCUSD", entry_order_ref="B2"))
    store.claim_exit("won-1", "t1")
    store.close_position("won-1", "t1", PositionStatus.COMPLETED, Decimal("12"), Decimal("20"), "S2")

    store.create_position(make_position(id="lost-1", instrument="XYZEUR", entry_order_ref="B3"))
    store.claim_exit("lost-1", "t2")
    store.close_position("lost-1", "t2", PositionStatus.MANUAL, Decimal("9"), Decimal("-10"), "S3")

    store.create_position(make_position(id="bad-1", instrument="DOTUSD", entry_order_ref="B4"))
    store.mark_errored("bad-1", "AddOrder timed out")

    store.close()
    return db_path


def test_position_status_lists_active_only(seeded_db):
    code, out = run_script("position_status.py", seeded_db, ["list"])
    assert code == 0
    assert "active-1" in out
    assert "won-1" not in out


def test_position_status_list_all(seeded_db):
    code, out = run_script("position_status.py", seeded_db, ["list", "--all"])
    assert code == 0
    for position_id in ("active-1", "won-1", "lost-1", "bad-1"):
        assert position_id in out


def test_position_status_show_includes_events(seeded_db):
    code, out = run_script("position_status.py", seeded_db, ["show", "won-1"])
    assert code == 0
    assert "Status: completed" in out
    assert "Exit Price: 12.00" in out
    assert "exit_claimed" in out


def test_position_status_show_errored_reason(seeded_db):
    code, out = run_script("position_status.py", seeded_db, ["show", "bad-1"])
    assert code == 0
    assert "Error: AddOrder timed out" in out


def test_position_status_unknown_id(seeded_db):
    code, out = run_script("position_status.py", seeded_db, ["show", "nope"])
    assert code == 1
    assert "Position not found" in out


def test_missing_database(tmp_path):
    for script in ("position_status.py", "trade_history.py"):
        code, out = run_script(script, tmp_path / "missing.db", ["list"])
        assert code == 1
        assert "Database not found" in out


def test_trade_history_summary(seeded_db):
    code, out = run_script("trade_history.py", seeded_db, ["summary"])
    assert code == 0
    assert "Closed Trades: 2" in out
    assert "Winners / Losers: 1 / 1" in out
    assert "Total Return: 10.00%" in out


def test_trade_history_list_filters_by_instrument(seeded_db):
    code, out = run_script("trade_history.py", seeded_db, ["list", "--instrument", "xyzeur"])
    assert code == 0
    assert "XYZEUR" in out
    assert "ABCUSD" not in out
    assert "Total: 1" in out


def test_trade_history_list_shows_errored(seeded_db):
    code, out = run_script("trade_history.py", seeded_db, ["list"])
    assert code == 0
    assert "error: AddOrder timed out" in out
    assert "Total: 3" in out


def test_trade_history_empty(tmp_path):
    db_path = tmp_path / "empty.db"
    PositionStore(db_path).close()
    code, out = run_script("trade_history.py", db_path, ["summary"])
    assert code == 0
    assert "No closed trades found" in out
