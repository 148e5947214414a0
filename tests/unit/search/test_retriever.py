"""Tests for the hybrid retriever and RRF fusion."""

from __future__ import annotations

import pytest

from recall.db.models import Document
from recall.db.repository import Repository
from recall.db.vectors import ensure_vec_table, model_to_slug, vec_table_name
from recall.search.retriever import RetrieverConfig, ScoredDocument, _rrf_fuse, retrieve

_SLUG = model_to_slug("test/model")
_TABLE = vec_table_name(_SLUG)


def _doc(seq: int, text: str = "") -> Document:
    return Document(id=f"d{seq}", text=text or f"text {seq}", seq=seq)


def _insert(repo: Repository, doc_id: str, text: str, vector: list[float] | None = None) -> int:
    seq = repo.insert_document(Document(id=doc_id, text=text))
    if vector is not None:
        repo.add_embedding(_TABLE, seq, vector)
    return seq


# ------------------------------------------------------------------
# RRF fusion
# ------------------------------------------------------------------

def test_rrf_fuse_combines_channels():
    a, b = _doc(1), _doc(2)
    results = _rrf_fuse({"dense": [(a, 0.1), (b, 0.2)], "bm25": [(a, -3.0)]}, top_k=5)
    assert [r.document.id for r in results] == ["d1", "d2"]
    assert results[0].dense_rank == 1
    assert results[0].bm25_rank == 1
    assert results[1].bm25_rank is None


def test_rrf_score_formula():
    a = _doc(1)
    results = _rrf_fuse({"dense": [(a, 0.0)], "bm25": [(a, 0.0)]}, top_k=1, k=60)
    assert results[0].rrf_score == pytest.approx(2 / 61)


def test_rrf_missing_channel_scored_past_end():
    a, b = _doc(1), _doc(2)
    results = _rrf_fuse({"dense": [(a, 0.0)], "bm25": [(b, 0.0)]}, top_k=2, k=60)
    by_id = {r.document.id: r.rrf_score for r in results}
    # each appears at rank 1 in one channel and is absent (rank 1 + 60) from the other
    assert by_id["d1"] == pytest.approx(1 / 61 + 1 / 121)
    assert by_id["d1"] == pytest.approx(by_id["d2"])


def test_rrf_ties_prefer_newer_documents():
    a, b = _doc(1), _doc(2)
    results = _rrf_fuse({"dense": [(a, 0.0)], "bm25": [(b, 0.0)]}, top_k=2)
    assert [r.document.id for r in results] == ["d2", "d1"]


def test_rrf_document_in_more_channels_wins():
    a, b = _doc(1), _doc(2)
    results = _rrf_fuse(
        {"dense": [(b, 0.0), (a, 0.0)], "bm25": [(a, 0.0)], "exact": [(a, 0.0)]}, top_k=2
    )
    assert results[0].document.id == "d1"
    assert results[0].exact_rank == 1


def test_rrf_respects_top_k():
    docs = [_doc(i) for i in range(1, 11)]
    results = _rrf_fuse({"dense": [(d, 0.0) for d in docs]}, top_k=3)
    assert len(results) == 3


def test_rrf_empty():
    assert _rrf_fuse({"dense": [], "bm25": [], "exact": []}, top_k=5) == []


def test_scored_document_defaults():
    scored = ScoredDocument(document=_doc(1), rrf_score=0.5)
    assert scored.dense_rank is None
    assert scored.exact_rank is None


# ------------------------------------------------------------------
# retrieve()
# ------------------------------------------------------------------

def test_retrieve_without_vec_table_uses_lexical_channels(tmp_db):
    repo = Repository(tmp_db)
    _insert(repo, "a", "the quarterly report is attached")
    _insert(repo, "b", "lunch tomorrow?")
    results = retrieve("quarterly report", [1.0, 0.0], repo, _TABLE, RetrieverConfig(top_k=5))
    assert [r.document.id for r in results] == ["a"]
    assert results[0].dense_rank is None


def test_retrieve_dense_channel(tmp_db):
    repo = Repository(tmp_db)
    ensure_vec_table(tmp_db, _SLUG, 2)
    _insert(repo, "near", "alpha", [1.0, 0.0])
    _insert(repo, "far", "beta", [0.0, 1.0])
    results = retrieve("zzz", [1.0, 0.0], repo, _TABLE, RetrieverConfig(top_k=1))
    assert results[0].document.id == "near"
    assert results[0].dense_rank == 1


def test_retrieve_exact_match_ranks_identifier_first(tmp_db):
    repo = Repository(tmp_db)
    ensure_vec_table(tmp_db, _SLUG, 2)
    _insert(repo, "code", "Ticket XY-99-BETA is blocked", [0.0, 1.0])
    for i in range(6):
        _insert(repo, f"noise{i}", f"beta release notes part {i}", [1.0, 0.0])
    results = retrieve("XY-99-BETA", [1.0, 0.0], repo, _TABLE, RetrieverConfig(top_k=3))
    assert results[0].document.id == "code"
    assert results[0].exact_rank == 1


def test_retrieve_skips_dense_when_embedding_missing(tmp_db):
    repo = Repository(tmp_db)
    ensure_vec_table(tmp_db, _SLUG, 2)
    _insert(repo, "a", "hello there", [1.0, 0.0])
    results = retrieve("hello", None, repo, _TABLE, RetrieverConfig(top_k=5))
    assert [r.document.id for r in results] == ["a"]
    assert results[0].dense_rank is None
