"""Repository pattern for document rows, the FTS5 index, and vec embeddings.

Single interface for: documents, FTS5 search, vec embeddings, substring scans.
Vec tables are model-managed (ensure_vec_table); the repository handles read
and write. Every FTS and vec row uses ``documents.seq`` as its rowid.

The repository never commits: callers run it inside Database.read() or
Database.write(), which own the transaction.
"""

from __future__ import annotations

import json
import re
import sqlite3
from collections.abc import Iterator

from recall.db.models import Document
from recall.db.vectors import vec_table_exists

_DOC_COLUMNS = "seq, id, text, source, path, annotated, created_at"
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class Repository:
    """Data access layer for stored documents.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see recall.db.schema.initialize).
        """
        self._conn = conn

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def get_document(self, doc_id: str) -> Document | None:
        row = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE id = ?", (doc_id,)
        ).fetchone()
        return _row_to_document(row) if row else None

    def document_exists(self, doc_id: str) -> bool:
        return self._conn.execute(
            "SELECT 1 FROM documents WHERE id = ? LIMIT 1", (doc_id,)
        ).fetchone() is not None

    def get_documents_by_seq(self, seqs: list[int]) -> dict[int, Document]:
        """Return {seq: Document} for every seq that still exists."""
        if not seqs:
            return {}
        placeholders = ",".join("?" * len(seqs))
        rows = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE seq IN ({placeholders})",
            seqs,
        ).fetchall()
        return {r["seq"]: _row_to_document(r) for r in rows}

    def insert_document(self, doc: Document) -> int:
        """Insert document + sync FTS5 index. Returns the new seq."""
        cur = self._conn.execute(
            """
            INSERT INTO documents (id, text, source, path, annotated)
            VALUES (?, ?, ?, ?, ?)
            """,
            (doc.id, doc.text, doc.source, doc.path, int(doc.annotated)),
        )
        seq = cur.lastrowid
        self._conn.execute(
            "INSERT INTO documents_fts(rowid, text) VALUES (?, ?)", (seq, doc.text)
        )
        return seq

    def delete_document(self, doc_id: str) -> int | None:
        """Delete a document with its FTS and vec entries. Returns the old seq or None."""
        row = self._conn.execute(
            "SELECT seq FROM documents WHERE id = ?", (doc_id,)
        ).fetchone()
        if row is None:
            return None
        seq = row["seq"]
        self._conn.execute("DELETE FROM documents_fts WHERE rowid = ?", (seq,))
        for table in self.list_vec_tables():
            self._conn.execute(f"DELETE FROM [{table}] WHERE rowid = ?", (seq,))  # noqa: S608
        self._conn.execute("DELETE FROM documents WHERE seq = ?", (seq,))
        return seq

    def set_annotated(self, doc_id: str, annotated: bool) -> bool:
        """Flip the golden-example flag. Returns False if *doc_id* is unknown."""
        cur = self._conn.execute(
            "UPDATE documents SET annotated = ? WHERE id = ?", (int(annotated), doc_id)
        )
        return cur.rowcount > 0

    def documents_by_prefix(self, path_prefix: str) -> list[Document]:
        """Return all documents whose path starts with *path_prefix* (case-sensitive)."""
        rows = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE substr(path, 1, ?) = ? ORDER BY seq",
            (len(path_prefix), path_prefix),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def golden_documents(self, limit: int) -> list[Document]:
        rows = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE annotated = 1 ORDER BY seq LIMIT ?",
            (limit,),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def pending_suggestion_documents(self, limit: int) -> list[Document]:
        rows = self._conn.execute(
            f"""
            SELECT {_DOC_COLUMNS} FROM documents
            WHERE source = 'agent_suggestion' AND annotated = 0
            ORDER BY seq LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def count_documents(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]

    def iter_path_text_source(self) -> Iterator[tuple[str, str, str]]:
        """Stream (path, text, source) over the whole corpus without loading it."""
        cur = self._conn.execute("SELECT path, text, source FROM documents")
        for row in cur:
            yield row[0], row[1], row[2]

    # ------------------------------------------------------------------
    # Vec embeddings
    # ------------------------------------------------------------------

    def add_embedding(self, table: str, seq: int, embedding: list[float]) -> None:
        """Insert an embedding into a vec table with explicit rowid = document seq."""
        self._conn.execute(
            f"INSERT INTO {table}(rowid, embedding) VALUES (?, ?)",
            (seq, json.dumps(embedding)),
        )

    def search_vec(
        self, table: str, embedding: list[float], limit: int = 10
    ) -> list[tuple[Document, float]]:
        """Nearest-neighbour search. Returns (document, distance) sorted by distance."""
        vec_rows = self._conn.execute(
            f"SELECT rowid, distance FROM {table} WHERE embedding MATCH ? AND k = ? "
            "ORDER BY distance",
            (json.dumps(embedding), limit),
        ).fetchall()
        docs = self.get_documents_by_seq([r["rowid"] for r in vec_rows])
        return [
            (docs[r["rowid"]], r["distance"]) for r in vec_rows if r["rowid"] in docs
        ]

    def has_vec_table(self, table: str) -> bool:
        return vec_table_exists(self._conn, table)

    def list_vec_tables(self) -> list[str]:
        """Names of the vec0 tables; their shadow tables share the prefix and are skipped."""
        return [
            r[0]
            for r in self._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' "
                "AND name LIKE 'vec_documents_%' AND sql LIKE 'CREATE VIRTUAL TABLE%' "
                "ORDER BY name"
            ).fetchall()
        ]

    # ------------------------------------------------------------------
    # FTS5 / BM25 search
    # ------------------------------------------------------------------

    def search_fts(self, query: str, limit: int = 10) -> list[tuple[Document, float]]:
        """BM25 full-text search. Returns (document, score) sorted best-first.

        bm25() returns negative values; lower (more negative) = better match.
        """
        fts_query = build_fts_query(query)
        if not fts_query:
            return []
        fts_rows = self._conn.execute(
            "SELECT rowid, bm25(documents_fts) AS score FROM documents_fts "
            "WHERE documents_fts MATCH ? ORDER BY score LIMIT ?",
            (fts_query, limit),
        ).fetchall()
        docs = self.get_documents_by_seq([r["rowid"] for r in fts_rows])
        return [(docs[r["rowid"]], r["score"]) for r in fts_rows if r["rowid"] in docs]

    def search_substring(self, needle: str, limit: int = 10) -> list[Document]:
        """Case-insensitive literal substring scan, most recent rows first."""
        if not needle:
            return []
        rows = self._conn.execute(
            f"SELECT {_DOC_COLUMNS} FROM documents WHERE instr(lower(text), lower(?)) > 0 "
            "ORDER BY seq DESC LIMIT ?",
            (needle, limit),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def rebuild_fts(self) -> int:
        """Replace the FTS contents with the current documents table. Returns row count."""
        self._conn.execute("DELETE FROM documents_fts")
        self._conn.execute(
            "INSERT INTO documents_fts(rowid, text) SELECT seq, text FROM documents"
        )
        return self.count_documents()


def build_fts_query(query: str) -> str:
    """Turn free text into an FTS5 OR-query of quoted tokens.

    FTS5 MATCH rejects punctuation like hyphens and commas as syntax errors,
    so the query is split on non-word characters: ``XY-99-BETA`` becomes
    ``"XY" OR "99" OR "BETA"`` and BM25 ranks rows matching more tokens first.
    """
    tokens = _TOKEN_RE.findall(query or "")
    return " OR ".join(f'"{t}"' for t in tokens)


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        seq=row["seq"],
        id=row["id"],
        text=row["text"],
        source=row["source"],
        path=row["path"],
        annotated=bool(row["annotated"]),
        created_at=row["created_at"],
    )
