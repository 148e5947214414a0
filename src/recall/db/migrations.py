"""Forward-only migration runner for recall's database schema.

Vec tables (vec_documents_*) are NOT migration-managed — use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT NOT NULL UNIQUE,
    text            TEXT NOT NULL,
    source          TEXT NOT NULL DEFAULT '',
    path            TEXT NOT NULL DEFAULT '',
    annotated       INTEGER NOT NULL DEFAULT 0,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_documents_path ON documents(path);
CREATE INDEX IF NOT EXISTS idx_documents_annotated ON documents(annotated, source);

CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(text, tokenize='porter ascii');

CREATE TABLE IF NOT EXISTS contacts (
    id              TEXT PRIMARY KEY,
    handle          TEXT NOT NULL UNIQUE COLLATE NOCASE,
    display_name    TEXT NOT NULL DEFAULT '',
    profession      TEXT NOT NULL DEFAULT '',
    relationship    TEXT NOT NULL DEFAULT '',
    company         TEXT NOT NULL DEFAULT '',
    linkedin_url    TEXT NOT NULL DEFAULT '',
    last_contacted  TEXT,
    last_channel    TEXT NOT NULL DEFAULT '',
    created_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS contact_channels (
    contact_id      TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    kind            TEXT NOT NULL,
    value           TEXT NOT NULL,
    PRIMARY KEY (contact_id, kind, value)
);

CREATE INDEX IF NOT EXISTS idx_contact_channels_value
    ON contact_channels(value COLLATE NOCASE);

CREATE TABLE IF NOT EXISTS contact_notes (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT NOT NULL UNIQUE,
    contact_id      TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    text            TEXT NOT NULL,
    timestamp       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS contact_suggestions (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT NOT NULL UNIQUE,
    contact_id      TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    type            TEXT NOT NULL,
    content         TEXT NOT NULL,
    timestamp       TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'pending'
);

CREATE INDEX IF NOT EXISTS idx_contact_suggestions_contact
    ON contact_suggestions(contact_id, status);

CREATE TABLE IF NOT EXISTS bridge_events (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    at              TEXT NOT NULL,
    channel         TEXT NOT NULL DEFAULT 'unknown',
    status          TEXT NOT NULL,
    event_ref       TEXT NOT NULL DEFAULT '',
    payload         TEXT NOT NULL DEFAULT '{}'
);
"""

# Append-only. Each entry: (version: int, sql: str).
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version, and safe when two
    processes initialise the same file at once (each migration runs under
    BEGIN IMMEDIATE and records its version only once).
    """
    conn.execute(_CREATE_SCHEMA_VERSION)

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(
                "BEGIN IMMEDIATE;\n"
                f"{sql}\n"
                f"INSERT INTO schema_version (version) SELECT {int(version)} "
                f"WHERE NOT EXISTS (SELECT 1 FROM schema_version WHERE version >= {int(version)});\n"
                "COMMIT;"
            )
