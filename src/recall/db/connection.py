"""SQLite connection layer with sqlite-vec extension.

Connections are short-lived: each read or write opens its own connection so
threads and processes never share transaction state. Writes run inside
``BEGIN IMMEDIATE`` so there is exactly one writer at a time across processes;
WAL mode lets readers keep a consistent snapshot while a write is in flight.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import sqlite_vec

from recall.db.schema import initialize
from recall.errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LOCK_MESSAGES = ("database is locked", "database is busy", "database table is locked")


class Database:
    """Per-user SQLite database with sqlite-vec vector search support."""

    def __init__(
        self,
        db_path: Path | str,
        *,
        busy_timeout_ms: int = 5_000,
        lock_retries: int = 5,
    ) -> None:
        """Store the database path. Call connect() to open a connection.

        Args:
            db_path: Path to the SQLite database file (created if missing).
            busy_timeout_ms: How long SQLite waits on a locked database per attempt.
            lock_retries: Attempts made by read()/write() when the database stays locked.
        """
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self.lock_retries = max(1, lock_retries)
        self._conn: sqlite3.Connection | None = None
        self._schema_ready = False

    def connect(self, timeout: float | None = None) -> sqlite3.Connection:
        """Open a connection, load sqlite-vec, and return the connection.

        The connection is in autocommit mode; write() issues its own
        BEGIN IMMEDIATE / COMMIT.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        busy_seconds = timeout if timeout is not None else self.busy_timeout_ms / 1000
        conn = sqlite3.connect(
            self.db_path,
            timeout=busy_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(f"PRAGMA busy_timeout = {int(busy_seconds * 1000)}")
        return conn

    def __enter__(self) -> sqlite3.Connection:
        """Open the database and return the connection (context manager support)."""
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        """Close the connection when leaving the context manager."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def ensure_schema(self) -> None:
        """Create or migrate the schema once per Database instance (idempotent)."""
        if self._schema_ready:
            return
        self._run(initialize, write=False, timeout=None)
        self._schema_ready = True

    # ------------------------------------------------------------------
    # Retrying read / write helpers
    # ------------------------------------------------------------------

    def read(self, fn: Callable[[sqlite3.Connection], T], timeout: float | None = None) -> T:
        """Run *fn* on a fresh connection and return its result.

        Raises:
            StoreUnavailable: If the database cannot be opened or stays locked.
        """
        return self._run(fn, write=False, timeout=timeout)

    def write(self, fn: Callable[[sqlite3.Connection], T], timeout: float | None = None) -> T:
        """Run *fn* inside a ``BEGIN IMMEDIATE`` transaction and commit.

        Any exception raised by *fn* rolls the whole transaction back.

        Raises:
            StoreUnavailable: If the database cannot be opened or stays locked.
        """
        return self._run(fn, write=True, timeout=timeout)

    def _run(
        self,
        fn: Callable[[sqlite3.Connection], T],
        write: bool,
        timeout: float | None,
    ) -> T:
        delay = 0.05
        for attempt in range(1, self.lock_retries + 1):
            try:
                return self._run_once(fn, write=write, timeout=timeout)
            except sqlite3.IntegrityError:
                raise
            except sqlite3.OperationalError as exc:
                if _is_lock_error(exc) and attempt < self.lock_retries:
                    logger.debug(
                        "store locked (attempt %d/%d), retrying in %.2fs",
                        attempt, self.lock_retries, delay,
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, 1.0)
                    continue
                raise StoreUnavailable(f"{self.db_path}: {exc}") from exc
            except sqlite3.DatabaseError as exc:
                raise StoreUnavailable(f"{self.db_path}: {exc}") from exc
        raise StoreUnavailable(f"{self.db_path}: database is locked")  # pragma: no cover

    def _run_once(
        self,
        fn: Callable[[sqlite3.Connection], T],
        write: bool,
        timeout: float | None,
    ) -> T:
        conn = self.connect(timeout=timeout)
        try:
            if not write:
                return fn(conn)
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = fn(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return result
        finally:
            conn.close()


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return any(m in message for m in _LOCK_MESSAGES)
