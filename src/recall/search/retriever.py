"""Hybrid retriever: dense (sqlite-vec) + BM25 (FTS5) + exact substring, fused via RRF.

Reciprocal Rank Fusion:
  score(d) = Σ_channel 1 / (k + rank_channel(d))   k = 60

A document missing from a channel is scored as if it ranked just past the end
of that channel's list (n + k), so appearing in more channels always helps.

The exact channel is a literal substring scan of the raw query. It keeps
identifiers such as ``XY-99-BETA`` at the top even when the embedding of the
query is unrelated to the document.
"""

from __future__ import annotations

from dataclasses import dataclass

from recall.db.models import Document
from recall.db.repository import Repository

_RRF_K = 60


@dataclass
class RetrieverConfig:
    """Configuration for the hybrid retriever.

    Attributes:
        top_k: Maximum number of documents to return after fusion.
        rrf_k: RRF damping constant.
        candidate_multiplier: Each channel fetches top_k * multiplier candidates.
    """

    top_k: int = 5
    rrf_k: int = _RRF_K
    candidate_multiplier: int = 4


@dataclass
class ScoredDocument:
    """A retrieved document together with its RRF fusion score and per-channel ranks.

    Attributes:
        document: The Document instance from the database.
        rrf_score: Reciprocal Rank Fusion score (higher = more relevant).
        dense_rank: 1-based rank in the dense channel (None if not retrieved).
        bm25_rank: 1-based rank in the BM25 channel (None if not retrieved).
        exact_rank: 1-based rank in the exact-substring channel (None if not retrieved).
    """

    document: Document
    rrf_score: float
    dense_rank: int | None = None
    bm25_rank: int | None = None
    exact_rank: int | None = None


def retrieve(
    query: str,
    query_embedding: list[float] | None,
    repo: Repository,
    vec_table: str,
    config: RetrieverConfig,
) -> list[ScoredDocument]:
    """Run hybrid retrieval and return RRF-fused documents, best-first.

    The dense channel is skipped when *query_embedding* is None or the vec
    table has not been created yet (nothing has been upserted).
    """
    candidates = max(config.top_k, config.top_k * config.candidate_multiplier)

    dense_results: list[tuple[Document, float]] = []
    if query_embedding is not None and repo.has_vec_table(vec_table):
        dense_results = repo.search_vec(vec_table, query_embedding, limit=candidates)

    bm25_results = repo.search_fts(query, limit=candidates)
    exact_results = [(d, 0.0) for d in repo.search_substring(query.strip(), limit=candidates)]

    return _rrf_fuse(
        {"dense": dense_results, "bm25": bm25_results, "exact": exact_results},
        top_k=config.top_k,
        k=config.rrf_k,
    )


# ------------------------------------------------------------------
# RRF fusion
# ------------------------------------------------------------------


def _rrf_fuse(
    channels: dict[str, list[tuple[Document, float]]],
    top_k: int,
    k: int = _RRF_K,
) -> list[ScoredDocument]:
    """Combine ranked lists via Reciprocal Rank Fusion.

    Ties are broken by the document's insertion order (newer first).
    """
    # Build seq → rank maps (1-indexed) per channel
    ranks: dict[str, dict[int, int]] = {}
    doc_map: dict[int, Document] = {}
    for name, results in channels.items():
        channel_rank: dict[int, int] = {}
        for i, (doc, _) in enumerate(results):
            if doc.seq is None or doc.seq in channel_rank:
                continue
            channel_rank[doc.seq] = i + 1
            doc_map.setdefault(doc.seq, doc)
        ranks[name] = channel_rank

    scored: list[ScoredDocument] = []
    for seq, doc in doc_map.items():
        score = 0.0
        for name, results in channels.items():
            rank = ranks[name].get(seq, len(results) + k)
            score += 1.0 / (k + rank)
        scored.append(
            ScoredDocument(
                document=doc,
                rrf_score=score,
                dense_rank=ranks.get("dense", {}).get(seq),
                bm25_rank=ranks.get("bm25", {}).get(seq),
                exact_rank=ranks.get("exact", {}).get(seq),
            )
        )

    scored.sort(key=lambda s: (s.rrf_score, s.document.seq or 0), reverse=True)
    return scored[:top_k]

