"""SQLite plumbing for the Streamlet stats database.

One process-wide writer connection serializes every mutation behind
``_WRITE_LOCK`` (``write_session``). Reads open short-lived connections of
their own (``session``) and see the last committed state thanks to WAL.
"""
from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
import sqlite3
import threading
from typing import Iterator, Optional, Union

_DB_PATH: Optional[Path] = None
_SCHEMA_PATH = Path(__file__).resolve().with_name("schema.sql")

_WRITER: Optional[sqlite3.Connection] = None
_WRITE_LOCK = threading.RLock()

BUSY_TIMEOUT_MS = 5000


def configure(path: Union[str, Path]) -> Path:
    """Point the module at ``path`` (parent created) and drop any open writer."""
    resolved = Path(path).expanduser()
    if not resolved.is_absolute():
        resolved = resolved.resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    global _DB_PATH
    with _WRITE_LOCK:
        _close_writer()
        _DB_PATH = resolved
    return resolved


def path() -> Path:
    if _DB_PATH is None:
        raise RuntimeError("Database path not configured")
    return _DB_PATH


def connect(*, writer: bool = False) -> sqlite3.Connection:
    """New connection with row access by column name; readers are query-only."""
    conn = sqlite3.connect(path(), check_same_thread=False, timeout=BUSY_TIMEOUT_MS / 1000)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS};")
    if writer:
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.OperationalError:
            pass
        conn.execute("PRAGMA synchronous = NORMAL;")
    else:
        conn.execute("PRAGMA query_only = ON;")
    return conn


@contextmanager
def session() -> Iterator[sqlite3.Connection]:
    """Read-only connection closed on exit."""
    conn = connect()
    try:
        yield conn
    finally:
        conn.close()


def _close_writer() -> None:
    global _WRITER
    if _WRITER is not None:
        try:
            _WRITER.close()
        finally:
            _WRITER = None


@contextmanager
def write_session() -> Iterator[sqlite3.Connection]:
    """
    Exclusive transaction on the shared writer connection.

    Everything executed inside the block commits together or rolls back
    together, and no other writer can interleave with it.
    """
    global _WRITER
    with _WRITE_LOCK:
        if _WRITER is None:
            _WRITER = connect(writer=True)
        conn = _WRITER
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise


def close() -> None:
    with _WRITE_LOCK:
        _close_writer()


def ensure_schema() -> None:
    """Apply the bundled ``schema.sql``; safe to call on every start."""
    sql = _SCHEMA_PATH.read_text()
    with _WRITE_LOCK:
        conn = connect(writer=True)
        try:
            conn.executescript(sql)
            conn.commit()
        finally:
            conn.close()


__all__ = [
    "configure",
    "path",
    "connect",
    "session",
    "write_session",
    "close",
    "ensure_schema",
]
