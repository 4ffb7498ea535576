"""Open the position database, optionally encrypted at rest with sqlcipher."""
import sqlite3
from pathlib import Path
from typing import Optional, Union


def get_encrypted_connection(db_path: str, password: str, timeout: int = 30):
    """Open ``db_path`` through sqlcipher and unlock it with ``password``.

    Raises:
        RuntimeError: If sqlcipher3 is not installed or the key is wrong
    """
    try:
        import sqlcipher3 as sqlite3_enc  # type: ignore
    except ImportError:
        raise RuntimeError(
            "An encryption password is configured but sqlcipher3 is not installed. "
            "Install with: pip install sqlcipher3-binary"
        )

    conn = sqlite3_enc.connect(db_path, timeout=timeout, check_same_thread=False)
    escaped = password.replace("'", "''")
    conn.execute(f"PRAGMA key = '{escaped}'")
    conn.execute("PRAGMA cipher_page_size = 4096")
    try:
        conn.execute("SELECT name FROM sqlite_master LIMIT 1")
    except Exception as e:
        conn.close()
        raise RuntimeError(f"Failed to open encrypted database (wrong password?): {e}")
    conn.row_factory = sqlite3_enc.Row
    return conn


def get_connection(
    db_path: Union[str, Path],
    password: Optional[str] = None,
    timeout: int = 30,
):
    """Return a connection usable from worker threads, with ``Row`` results.

    Uses sqlcipher when ``password`` is given, plain sqlite3 otherwise.
    """
    if password:
        return get_encrypted_connection(str(db_path), password, timeout)
    conn = sqlite3.connect(str(db_path), timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn
