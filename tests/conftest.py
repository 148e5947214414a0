"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import re
from types import SimpleNamespace

import litellm
import pytest

from recall.bridge.event_log import BridgeEventLog
from recall.bridge.service import ChannelBridge
from recall.db.connection import Database
from recall.db.schema import initialize
from recall.embedding.provider import EmbeddingProvider
from recall.identity.registry import IdentityRegistry
from recall.store.document_store import DocumentStore

FAKE_DIMS = 64
_TOKEN_RE = re.compile(r"\w+")


def bag_of_words(text: str, dims: int = FAKE_DIMS) -> list[float]:
    """Deterministic embedding: token counts hashed into *dims* buckets.

    The last bucket is a constant bias so no text embeds to a zero vector.
    """
    vector = [0.0] * dims
    for token in _TOKEN_RE.findall(text.lower()):
        bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % (dims - 1)
        vector[bucket] += 1.0
    vector[-1] = 0.1
    return vector


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Keep tests away from ~/.recall, a recall.yaml in CWD, and RECALL_* env vars."""
    monkeypatch.setattr("recall.config._GLOBAL_CONFIG_PATH", tmp_path / "home" / "config.yaml")
    monkeypatch.chdir(tmp_path)
    for var in ("RECALL_DB_PATH", "RECALL_EMBEDDING_MODEL", "RECALL_EMBEDDING_DIMENSIONS"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def fake_embedding(monkeypatch):
    """Replace litellm.embedding with bag_of_words; returns the list of input batches."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    calls: list[list[str]] = []

    def _embedding(model, input, timeout=None, num_retries=None, **kwargs):
        calls.append(list(input))
        return SimpleNamespace(data=[{"embedding": bag_of_words(t)} for t in input])

    monkeypatch.setattr(litellm, "embedding", _embedding)
    return calls


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "recall.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def database(tmp_path) -> Database:
    return Database(tmp_path / "recall.db")


@pytest.fixture
def embedder(fake_embedding) -> EmbeddingProvider:
    return EmbeddingProvider("openai/text-embedding-3-small")


@pytest.fixture
def registry(database) -> IdentityRegistry:
    return IdentityRegistry(database)


@pytest.fixture
def store(database, embedder, registry) -> DocumentStore:
    return DocumentStore(database, embedder, registry=registry)


@pytest.fixture
def event_log(database) -> BridgeEventLog:
    return BridgeEventLog(database)


@pytest.fixture
def bridge(store, registry, event_log) -> ChannelBridge:
    return ChannelBridge(store, registry, event_log)
