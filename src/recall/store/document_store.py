"""Document store: hybrid vector + lexical retrieval over personal messages.

Every document lives in one ``documents`` row, one FTS5 row, and one vec row
for the active embedding model, all keyed by ``documents.seq``. Writes embed
first and only then open a single ``BEGIN IMMEDIATE`` transaction, so a model
failure or timeout never leaves a half-written row behind.

Reads degrade: if the backing store cannot be reached they log the
StoreUnavailable error and return an empty result. Writes raise.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar

from recall.config import RetrievalCfg
from recall.db.connection import Database
from recall.db.models import ConversationSummary, Document
from recall.db.repository import Repository
from recall.db.vectors import ensure_vec_table, vec_table_name
from recall.embedding.provider import EmbeddingProvider
from recall.errors import NotFound, OperationTimeout, StoreUnavailable
from recall.search.retriever import RetrieverConfig, ScoredDocument, retrieve
from recall.text import (
    channel_from_document,
    extract_date,
    extract_subject,
    history_prefix,
    strip_message_prefix,
    strip_path_scheme,
)

if TYPE_CHECKING:
    from recall.identity.registry import IdentityRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def document_id(source: str, path: str, text: str) -> str:
    """Derive a stable document id from its content, for idempotent re-ingestion."""
    digest = hashlib.sha1(f"{source}\x00{path}\x00{text}".encode()).hexdigest()
    return f"doc-{digest[:24]}"


class DocumentStore:
    """Hybrid-search document store backed by SQLite, FTS5 and sqlite-vec.

    Args:
        db: Database handle (schema is created on construction).
        embedder: Embedding provider; its model selects the vec table.
        retrieval: Hybrid search tuning; defaults to RetrievalCfg().
        registry: Optional identity registry. When given, upsert() stamps
            last-contacted metadata for every document with a handle path
            and a bracketed timestamp.
    """

    def __init__(
        self,
        db: Database,
        embedder: EmbeddingProvider,
        retrieval: RetrievalCfg | None = None,
        registry: IdentityRegistry | None = None,
    ) -> None:
        self._db = db
        self._embedder = embedder
        cfg = retrieval or RetrievalCfg()
        self._retriever_cfg = RetrieverConfig(
            top_k=cfg.top_k, rrf_k=cfg.rrf_k, candidate_multiplier=cfg.candidate_multiplier
        )
        self._registry = registry
        # Serialises in-process writers; BEGIN IMMEDIATE covers other processes.
        self._write_lock = threading.Lock()
        db.ensure_schema()

    @property
    def vec_table(self) -> str:
        return vec_table_name(self._embedder.slug)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(
        self,
        documents: Iterable[Document | Mapping[str, Any]],
        timeout: float | None = None,
    ) -> list[str]:
        """Embed and persist *documents*, replacing any existing row with the same id.

        The first call creates the vec table for the embedding model. A
        replacement is a delete + insert inside one transaction, so readers
        never see the id missing.

        Returns:
            The ids written, in input order (within-batch duplicates collapse
            to the last occurrence).

        Raises:
            ModelUnavailable: If embedding fails; nothing is written.
            OperationTimeout: If *timeout* elapses before the write starts.
            StoreUnavailable: If the transaction cannot be committed.
        """
        docs = _dedupe_batch(_coerce(d) for d in documents)
        if not docs:
            return []
        deadline = _deadline(timeout)
        vectors = self._embedder.embed_many([d.text for d in docs], timeout=timeout)

        def _write(conn) -> None:
            repo = Repository(conn)
            table = ensure_vec_table(conn, self._embedder.slug, len(vectors[0]))
            for doc, vector in zip(docs, vectors):
                repo.delete_document(doc.id)
                seq = repo.insert_document(doc)
                repo.add_embedding(table, seq, vector)

        with self._write_lock:
            self._db.write(_write, timeout=_remaining(deadline, "upsert"))
        logger.info("upserted %d documents", len(docs))

        self._stamp_contacts(docs)
        return [d.id for d in docs]

    def insert_missing(
        self,
        documents: Iterable[Document | Mapping[str, Any]],
        timeout: float | None = None,
    ) -> list[str]:
        """Insert only documents whose id is not stored yet; never replaces.

        Known ids are filtered out before embedding, and the existence check
        is repeated inside the write transaction, so two writers racing on the
        same id insert it exactly once.

        Returns:
            Ids actually inserted by this call.
        """
        docs = _dedupe_batch(_coerce(d) for d in documents)
        if not docs:
            return []
        deadline = _deadline(timeout)

        known = self._db.read(
            lambda conn: {d.id for d in docs if Repository(conn).document_exists(d.id)}
        )
        docs = [d for d in docs if d.id not in known]
        if not docs:
            return []
        vectors = self._embedder.embed_many([d.text for d in docs], timeout=timeout)

        def _write(conn) -> list[str]:
            repo = Repository(conn)
            table = ensure_vec_table(conn, self._embedder.slug, len(vectors[0]))
            inserted = []
            for doc, vector in zip(docs, vectors):
                if repo.document_exists(doc.id):
                    continue
                seq = repo.insert_document(doc)
                repo.add_embedding(table, seq, vector)
                inserted.append(doc.id)
            return inserted

        with self._write_lock:
            inserted = self._db.write(_write, timeout=_remaining(deadline, "insert"))
        if inserted:
            logger.info("inserted %d new documents", len(inserted))
        return inserted

    def annotate(self, doc_id: str, golden: bool) -> None:
        """Flip the golden-example flag of *doc_id*.

        Raises:
            NotFound: If no document has that id.
        """
        with self._write_lock:
            found = self._db.write(lambda conn: Repository(conn).set_annotated(doc_id, golden))
        if not found:
            raise NotFound(f"Document '{doc_id}' not found.")

    def delete(self, doc_id: str) -> bool:
        """Remove *doc_id* with its lexical and vector entries. Returns False if unknown."""
        with self._write_lock:
            seq = self._db.write(lambda conn: Repository(conn).delete_document(doc_id))
        return seq is not None

    def rebuild_lexical_index(self) -> int:
        """Replace the FTS5 contents with the current corpus. Returns rows indexed."""
        with self._write_lock:
            count = self._db.write(lambda conn: Repository(conn).rebuild_fts())
        logger.info("rebuilt lexical index over %d documents", count)
        return count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def search(
        self, query: str, limit: int | None = None, timeout: float | None = None
    ) -> list[ScoredDocument]:
        """Hybrid search returning fused scores and per-channel ranks.

        *timeout* bounds the query embedding and the index read together.

        Raises:
            ModelUnavailable: If the query cannot be embedded.
            OperationTimeout: If *timeout* elapses before the index is read.
        """
        if not query or not query.strip():
            return []
        deadline = _deadline(timeout)
        embedding = self._embedder.embed(query, timeout=timeout)
        read_timeout = _remaining(deadline, "search")
        cfg = RetrieverConfig(
            top_k=limit if limit is not None else self._retriever_cfg.top_k,
            rrf_k=self._retriever_cfg.rrf_k,
            candidate_multiplier=self._retriever_cfg.candidate_multiplier,
        )
        return self._read(
            lambda conn: retrieve(query, embedding, Repository(conn), self.vec_table, cfg),
            [],
            timeout=read_timeout,
        )

    def hybrid_search(
        self, query: str, limit: int | None = None, timeout: float | None = None
    ) -> list[Document]:
        """Return the top documents for *query*, fusing semantic and keyword relevance.

        Raises:
            ModelUnavailable: If the query cannot be embedded.
            OperationTimeout: If *timeout* elapses first.
        """
        return [s.document for s in self.search(query, limit, timeout=timeout)]

    def history_by_prefix(self, path_prefix: str) -> list[Document]:
        """All documents whose path starts with *path_prefix*, deduplicated by id.

        Documents with a blank id are keyed by ``path::text`` instead. No
        ordering is guaranteed.
        """
        rows = self._read(lambda conn: Repository(conn).documents_by_prefix(path_prefix), [])
        seen: set[str] = set()
        out: list[Document] = []
        for doc in rows:
            key = doc.id.strip() or f"{doc.path}::{doc.text}"
            if key in seen:
                continue
            seen.add(key)
            out.append(doc)
        return out

    def snippets(self, identifier: str, limit: int = 5) -> list[Document]:
        """Most recent *limit* documents for a handle or email, newest first.

        Documents without a parsable bracketed timestamp are dropped.
        """
        return self._newest_first(history_prefix(identifier))[:limit]

    def latest_subject(self, email: str) -> str | None:
        """Subject line of the most recent dated email exchanged with *email*."""
        if not email or "@" not in email:
            return None
        for doc in self._newest_first(f"mailto:{email}"):
            subject = extract_subject(doc.text)
            if subject:
                return subject
        return None

    def golden_examples(self, limit: int = 10) -> list[Document]:
        return self._read(lambda conn: Repository(conn).golden_documents(limit), [])

    def pending_suggestions(self, limit: int = 20) -> list[Document]:
        return self._read(lambda conn: Repository(conn).pending_suggestion_documents(limit), [])

    def get(self, doc_id: str) -> Document | None:
        return self._read(lambda conn: Repository(conn).get_document(doc_id), None)

    def exists(self, doc_id: str) -> bool:
        return self._read(lambda conn: Repository(conn).document_exists(doc_id), False)

    def count(self) -> int:
        return self._read(lambda conn: Repository(conn).count_documents(), 0)

    def conversation_index(self) -> dict[str, ConversationSummary]:
        """Per-handle summary built in one streaming pass over (path, text, source).

        For each handle: the number of documents and the one whose bracketed
        timestamp sorts latest.
        """

        def _scan(conn) -> dict[str, ConversationSummary]:
            index: dict[str, ConversationSummary] = {}
            for path, text, source in Repository(conn).iter_path_text_source():
                handle = strip_path_scheme(path)
                if not handle:
                    continue
                entry = index.get(handle)
                if entry is None:
                    entry = index[handle] = ConversationSummary(handle=handle)
                entry.count += 1
                timestamp = extract_date(text) or ""
                if entry.count == 1 or timestamp > entry.latest_timestamp:
                    entry.latest_timestamp = timestamp
                    entry.latest_text = text
                    entry.preview = strip_message_prefix(text)
                    entry.path = path
                    entry.source = source
                    entry.channel = channel_from_document(path, source)
            return index

        return self._read(_scan, {})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _newest_first(self, path_prefix: str) -> list[Document]:
        dated = [
            (date, doc)
            for doc in self.history_by_prefix(path_prefix)
            if (date := extract_date(doc.text))
        ]
        dated.sort(key=lambda pair: pair[0], reverse=True)
        return [doc for _, doc in dated]

    def _read(self, fn: Callable[[Any], T], default: T, timeout: float | None = None) -> T:
        try:
            return self._db.read(fn, timeout=timeout)
        except StoreUnavailable as exc:
            logger.warning("document store unavailable, returning empty result: %s", exc)
            return default

    def _stamp_contacts(self, docs: list[Document]) -> None:
        if self._registry is None:
            return
        for doc in docs:
            handle = strip_path_scheme(doc.path)
            timestamp = extract_date(doc.text)
            if not handle or not timestamp:
                continue
            try:
                self._registry.record_contact(
                    handle, timestamp, channel_from_document(doc.path, doc.source)
                )
            except StoreUnavailable as exc:
                logger.warning("could not record contact %s: %s", handle, exc)


# ------------------------------------------------------------------
# Module helpers
# ------------------------------------------------------------------


def _coerce(raw: Document | Mapping[str, Any]) -> Document:
    if isinstance(raw, Document):
        doc = Document(
            id=raw.id, text=raw.text, source=raw.source, path=raw.path, annotated=raw.annotated
        )
    else:
        doc = Document(
            id=str(raw.get("id") or ""),
            text=str(raw.get("text") or ""),
            source=str(raw.get("source") or ""),
            path=str(raw.get("path") or ""),
            annotated=bool(raw.get("annotated", raw.get("is_annotated", False))),
        )
    if not doc.text.strip():
        raise ValueError("Document text must not be empty.")
    if not doc.id.strip():
        doc.id = document_id(doc.source, doc.path, doc.text)
    return doc


def _dedupe_batch(docs: Iterable[Document]) -> list[Document]:
    by_id: dict[str, Document] = {}
    for doc in docs:
        by_id.pop(doc.id, None)
        by_id[doc.id] = doc
    return list(by_id.values())


def _deadline(timeout: float | None) -> float | None:
    return time.monotonic() + timeout if timeout is not None else None


def _remaining(deadline: float | None, operation: str) -> float | None:
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise OperationTimeout(f"Document store {operation} timed out.")
    return remaining
