"""Tests for the forward-only migration runner."""

from __future__ import annotations

import threading

from recall.db.connection import Database
from recall.db.migrations import MIGRATIONS, run_migrations


def _fresh_conn(tmp_path):
    """Open a new connection without running migrations."""
    db = Database(tmp_path / "test.db")
    return db.connect()


def _table_exists(conn, name: str) -> bool:
    return conn.execute(
        "SELECT name FROM sqlite_master WHERE type IN ('table','shadow') AND name=?", (name,)
    ).fetchone() is not None


# --- Bootstrap ---

def test_run_migrations_creates_schema_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _table_exists(conn, "schema_version")
    conn.close()


def test_run_migrations_records_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    assert version == MIGRATIONS[-1][0]
    conn.close()


# --- Idempotency ---

def test_run_migrations_idempotent(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    run_migrations(conn)
    count = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert count == len(MIGRATIONS)
    conn.close()


def test_concurrent_initialisation_records_each_version_once(tmp_path):
    path = tmp_path / "test.db"
    Database(path).connect().close()
    errors: list[Exception] = []

    def _init():
        try:
            conn = Database(path, busy_timeout_ms=5_000).connect()
            run_migrations(conn)
            conn.close()
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=_init) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    conn = Database(path).connect()
    count = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    conn.close()
    assert count == len(MIGRATIONS)


# --- Tables created ---

def test_run_migrations_creates_documents(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _table_exists(conn, "documents")
    conn.close()


def test_run_migrations_creates_fts(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _table_exists(conn, "documents_fts")
    conn.close()


def test_run_migrations_creates_contact_tables(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    for table in ("contacts", "contact_channels", "contact_notes", "contact_suggestions"):
        assert _table_exists(conn, table), table
    conn.close()


def test_run_migrations_creates_bridge_events(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _table_exists(conn, "bridge_events")
    conn.close()


def test_vec_tables_not_created_by_migrations(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE name LIKE 'vec_documents_%'"
    ).fetchall()
    assert rows == []
    conn.close()
