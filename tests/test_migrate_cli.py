import sqlite3
import subprocess
import sys
from pathlib import Path

from trailbot.db_migrations import MIGRATIONS

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "migrate.py"


def run_cli(db_path, args):
    cmd = [sys.executable, str(SCRIPT), "--db", str(db_path)] + args
    res = subprocess.run(cmd, capture_output=True, text=True, stdin=subprocess.DEVNULL)
    return res.returncode, res.stdout, res.stderr


def _versions(db_path):
    conn = sqlite3.connect(str(db_path))
    try:
        return [r[0] for r in conn.execute("SELECT version FROM schema_migrations ORDER BY version")]
    finally:
        conn.close()


def test_cli_apply_and_list(tmp_path: Path):
    db = tmp_path / "cli.db"
    code, out, err = run_cli(db, ["apply"])
    assert code == 0
    assert "Applied migrations" in out
    assert _versions(db) == sorted(MIGRATIONS)

    code, out, err = run_cli(db, ["apply"])
    assert code == 0
    assert "No migrations applied" in out

    code, out, err = run_cli(db, ["list"])
    assert code == 0
    assert "Available migrations:" in out
    assert "pending" not in out


def test_cli_apply_dry_run(tmp_path: Path):
    db = tmp_path / "dry.db"
    code, out, err = run_cli(db, ["apply", "--dry-run"])
    assert code == 0
    assert "Pending migrations" in out
    assert _versions(db) == []


def test_cli_rollback_last(tmp_path: Path):
    db = tmp_path / "cli2.db"
    run_cli(db, ["apply"])
    latest = max(MIGRATIONS)

    code, out, err = run_cli(db, ["rollback", "--last", "--dry-run"])
    assert code == 0
    assert f"Would rollback migration {latest}" in out
    assert latest in _versions(db)

    code, out, err = run_cli(db, ["rollback", "--last", "--yes"])
    assert code == 0
    assert f"Rolled back migration {latest}" in out
    assert latest not in _versions(db)


def test_cli_rollback_version(tmp_path: Path):
    db = tmp_path / "cli3.db"
    run_cli(db, ["apply"])

    code, out, err = run_cli(db, ["rollback", "--version", "2", "--yes"])
    assert code == 0
    assert "Rolled back migration 2" in out
    assert _versions(db) == [1]


def test_cli_rollback_on_empty_db(tmp_path: Path):
    db = tmp_path / "empty.db"
    code, out, err = run_cli(db, ["rollback", "--last", "--yes"])
    assert code == 0
    assert "No applied migrations to rollback" in out


def test_cli_without_command_prints_help(tmp_path: Path):
    code, out, err = run_cli(tmp_path / "x.db", [])
    assert code == 1
    assert "usage" in out.lower()
