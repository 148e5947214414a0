"""Embedding provider: text → unit-length vectors via LiteLLM."""

from recall.embedding.provider import EmbeddingProvider

__all__ = ["EmbeddingProvider"]
