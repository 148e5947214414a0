"""Embedding provider — LiteLLM embeddings with a single-flight model load.

The provider is an explicitly owned handle: construct one, pass it to the
DocumentStore, and it lazily "loads" the model on first use. Loading means
validating the provider API key and embedding a probe string to learn the
vector dimension. Concurrent first callers wait on the same load instead of
each starting their own.

Every vector returned is re-normalised to unit length so that similarity is
a plain dot product. Failures raise ModelUnavailable (or OperationTimeout);
nothing ever falls back to a zero vector.
"""

from __future__ import annotations

import logging
import math
import os
import threading
import time
from collections import OrderedDict
from typing import Any

import litellm

from recall.config import EmbeddingCfg
from recall.db.vectors import model_to_slug
from recall.errors import ModelUnavailable, OperationTimeout

logger = logging.getLogger(__name__)

_PROBE_TEXT = "recall embedding probe"

# Provider → env var mapping for API key validation
_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "huggingface": None,
}


class EmbeddingProvider:
    """Turn text into unit-length vectors via ``litellm.embedding()``.

    Args:
        model: LiteLLM embedding model string (provider/model format).
        dimensions: Expected vector size; learned from the probe when None.
        timeout: Default per-call timeout in seconds.
        cache_size: Maximum number of texts kept in the in-memory LRU cache.
        num_retries: LiteLLM retries on transient provider errors.
    """

    def __init__(
        self,
        model: str = "openai/text-embedding-3-small",
        *,
        dimensions: int | None = None,
        timeout: float = 30.0,
        cache_size: int = 2_048,
        num_retries: int = 2,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.num_retries = num_retries
        self._expected_dimensions = dimensions
        self._dimensions: int | None = None
        self._load_lock = threading.Lock()
        self._loaded = False
        self.load_count = 0

        self._cache_size = max(0, cache_size)
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._cache_lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: EmbeddingCfg) -> EmbeddingProvider:
        return cls(
            cfg.model,
            dimensions=cfg.dimensions,
            timeout=cfg.timeout,
            cache_size=cfg.cache_size,
            num_retries=cfg.num_retries,
        )

    @property
    def slug(self) -> str:
        return model_to_slug(self.model)

    @property
    def dimensions(self) -> int:
        """Vector dimension; triggers the model load if needed."""
        self.load()
        assert self._dimensions is not None
        return self._dimensions

    @property
    def loaded(self) -> bool:
        return self._loaded

    # ------------------------------------------------------------------
    # Load lifecycle
    # ------------------------------------------------------------------

    def load(self, timeout: float | None = None) -> None:
        """Load the model once. Idempotent; concurrent callers share one load.

        A failed load is not cached: the next call tries again.

        Raises:
            ModelUnavailable: If the API key is missing or the probe fails.
            OperationTimeout: If the probe exceeds *timeout*.
        """
        if self._loaded:
            return
        with self._load_lock:
            if self._loaded:
                return
            self._check_api_key()
            logger.info("loading embedding model %s", self.model)
            probe = self._request([_PROBE_TEXT], timeout)[0]
            if self._expected_dimensions and len(probe) != self._expected_dimensions:
                raise ModelUnavailable(
                    f"Embedding model '{self.model}' returned {len(probe)} dimensions, "
                    f"expected {self._expected_dimensions}."
                )
            self._dimensions = len(probe)
            self.load_count += 1
            self._loaded = True

    def _check_api_key(self) -> None:
        """Raise ModelUnavailable if no API key is available for the embedding model."""
        provider = self.model.split("/")[0].lower() if "/" in self.model else "openai"
        env_var = _PROVIDER_ENV.get(provider)
        if env_var and not os.environ.get(env_var):
            raise ModelUnavailable(
                f"No API key found for provider '{provider}'. "
                f"Set the {env_var} environment variable."
            )

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def embed(self, text: str, timeout: float | None = None) -> list[float]:
        """Return the unit-normalised embedding of *text*."""
        return self.embed_many([text], timeout=timeout)[0]

    def embed_many(self, texts: list[str], timeout: float | None = None) -> list[list[float]]:
        """Embed *texts* (cache-aware) within one shared *timeout* budget.

        Raises:
            ModelUnavailable: If the model cannot be loaded or the call fails.
            OperationTimeout: If the budget runs out before every text is embedded.
        """
        if not texts:
            return []
        budget = timeout if timeout is not None else self.timeout
        deadline = time.monotonic() + budget

        self.load(timeout=budget)

        results: list[list[float] | None] = [self._cache_get(t) for t in texts]
        missing = sorted({t for t, r in zip(texts, results) if r is None})
        if missing:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise OperationTimeout(
                    f"Embedding {len(missing)} texts exceeded the {budget:.1f}s budget."
                )
            fresh = dict(zip(missing, self._request(missing, remaining)))
            for text, vector in fresh.items():
                self._cache_put(text, vector)
            results = [r if r is not None else fresh[t] for t, r in zip(texts, results)]
        return [list(r) for r in results if r is not None]

    def _request(self, texts: list[str], timeout: float | None) -> list[list[float]]:
        """Call litellm.embedding() and return normalised vectors in input order."""
        try:
            response = litellm.embedding(
                model=self.model,
                input=texts,
                timeout=timeout if timeout is not None else self.timeout,
                num_retries=self.num_retries,
            )
        except (litellm.exceptions.Timeout, TimeoutError) as exc:
            raise OperationTimeout(f"Embedding model '{self.model}' timed out: {exc}") from exc
        except Exception as exc:
            raise ModelUnavailable(f"Embedding model '{self.model}' failed: {exc}") from exc

        vectors = [_vector_of(item) for item in response.data]
        if len(vectors) != len(texts):
            raise ModelUnavailable(
                f"Embedding model '{self.model}' returned {len(vectors)} vectors "
                f"for {len(texts)} inputs."
            )
        return [self._normalize(v) for v in vectors]

    def _normalize(self, vector: list[float]) -> list[float]:
        norm = math.sqrt(sum(x * x for x in vector))
        if not vector or norm == 0.0:
            raise ModelUnavailable(f"Embedding model '{self.model}' returned an empty vector.")
        return [x / norm for x in vector]

    # ------------------------------------------------------------------
    # LRU cache
    # ------------------------------------------------------------------

    def _cache_get(self, text: str) -> list[float] | None:
        if not self._cache_size:
            return None
        with self._cache_lock:
            vector = self._cache.get(text)
            if vector is not None:
                self._cache.move_to_end(text)
            return vector

    def _cache_put(self, text: str, vector: list[float]) -> None:
        if not self._cache_size:
            return
        with self._cache_lock:
            self._cache[text] = vector
            self._cache.move_to_end(text)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)


def _vector_of(item: Any) -> list[float]:
    if isinstance(item, dict):
        return list(item["embedding"])
    return list(item.embedding)
