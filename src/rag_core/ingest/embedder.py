"""Embedding abstractions, a deterministic baseline and a caching wrapper."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from hashlib import blake2b, sha256
from math import sqrt
from typing import Any


class Embedder(ABC):
    """Async embedding provider used by ingest, semantic chunking and retrieval."""

    model: str = "default"

    @abstractmethod
    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many documents."""

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Embed one query."""


class HashingEmbedder(Embedder):
    """Deterministic sparse-like embedding without external model calls.

    This class is primarily used for local tests and deterministic integration
    tests. In production, replace it with `OpenAIEmbeddingProvider`.
    """

    model = "hashing"

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = text.lower().split()
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.strip(".,;:!?\"'()").encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


@dataclass(slots=True)
class _CacheEntry:
    vector: list[float]
    expires_at: float


class CachedEmbedder(Embedder):
    """Caches vectors by a content hash of `(model, text)` with a TTL.

    Only the texts missing from the cache are sent to the wrapped embedder, in a
    single batch, and the cache is bounded by evicting the oldest entries.
    """

    def __init__(
        self,
        inner: Embedder,
        *,
        ttl_seconds: float = 3600.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.inner = inner
        self.model = inner.model
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        keys = [self.cache_key(text) for text in texts]
        now = self._clock()
        found: dict[str, list[float]] = {}
        with self._lock:
            for key in keys:
                entry = self._entries.get(key)
                if entry is not None and entry.expires_at > now:
                    found[key] = entry.vector
                elif entry is not None:
                    del self._entries[key]

        missing = [(key, text) for key, text in zip(keys, texts) if key not in found]
        unique = dict(missing)
        self.hits += len(texts) - len(missing)
        self.misses += len(missing)
        if unique:
            vectors = await self.inner.embed_documents(list(unique.values()))
            with self._lock:
                for key, vector in zip(unique, vectors, strict=True):
                    found[key] = vector
                    self._entries[key] = _CacheEntry(vector, now + self.ttl_seconds)
                self._evict()
        return [found[key] for key in keys]

    async def embed_query(self, text: str) -> list[float]:
        return (await self.embed_documents([text]))[0]

    def cache_key(self, text: str) -> str:
        return sha256(f"{self.model}:{text}".encode("utf-8")).hexdigest()

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }

    def _evict(self) -> None:
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return
        for key in sorted(self._entries, key=lambda k: self._entries[k].expires_at)[:overflow]:
            del self._entries[key]


class OpenAIEmbeddingProvider(Embedder):
    """OpenAI embeddings through the LangChain integration."""

    def __init__(self, model: str = "text-embedding-3-small", **kwargs: Any) -> None:
        try:
            from langchain_openai import OpenAIEmbeddings
        except Exception as exc:  # pragma: no cover - import path is environment-dependent
            raise RuntimeError(
                "OpenAI embedding dependencies are not available. Install langchain-openai."
            ) from exc

        self.model = model
        self._client = OpenAIEmbeddings(model=model, **kwargs)

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await self._client.aembed_documents(texts)

    async def embed_query(self, text: str) -> list[float]:
        return await self._client.aembed_query(text)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
