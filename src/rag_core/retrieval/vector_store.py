"""Vector store interfaces and concrete adapters."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from math import sqrt
from typing import Any, Protocol

from rag_core.ingest.embedder import Embedder, cosine_similarity
from rag_core.types import Chunk


@dataclass(slots=True)
class VectorFilter:
    """Tenant filter applied to every vector query."""

    user_id: str
    topic_id: str | None = None
    document_ids: list[str] | None = None

    def matches(self, metadata: dict[str, Any]) -> bool:
        if metadata.get("user_id") != self.user_id:
            return False
        if self.topic_id is not None and metadata.get("topic_id") != self.topic_id:
            return False
        if self.document_ids and metadata.get("document_id") not in self.document_ids:
            return False
        return True


@dataclass(slots=True)
class VectorMatch:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class VectorStore(Protocol):
    """Minimal async vector store contract for retrieval."""

    async def upsert(
        self, ids: list[str], vectors: list[list[float]], metadata: list[dict[str, Any]]
    ) -> None:
        """Insert or update vectors."""

    async def query(self, vector: list[float], filter: VectorFilter, top_k: int) -> list[VectorMatch]:
        """Search by vector similarity within the tenant filter."""

    async def delete(self, ids: list[str]) -> None:
        """Remove vectors by id."""


def chunk_metadata(chunk: Chunk) -> dict[str, Any]:
    """Metadata stored next to a chunk vector; enough to hydrate a result."""

    return {
        **chunk.metadata,
        "chunk_id": chunk.id,
        "document_id": chunk.document_id,
        "chunk_index": chunk.chunk_index,
        "user_id": chunk.user_id,
        "topic_id": chunk.topic_id,
        "content": chunk.content,
        "token_count": chunk.token_count,
    }


@dataclass(slots=True)
class _StoredVector:
    vector: list[float]
    metadata: dict[str, Any]


class InMemoryVectorStore:
    """Deterministic vector store used for tests and local prototyping."""

    def __init__(self) -> None:
        self._store: dict[str, _StoredVector] = {}
        self._lock = threading.Lock()

    async def upsert(
        self, ids: list[str], vectors: list[list[float]], metadata: list[dict[str, Any]]
    ) -> None:
        if not (len(ids) == len(vectors) == len(metadata)):
            raise ValueError("ids, vectors and metadata must have the same length")
        with self._lock:
            for vector_id, vector, meta in zip(ids, vectors, metadata, strict=True):
                self._store[vector_id] = _StoredVector(vector=vector, metadata=dict(meta))

    async def query(self, vector: list[float], filter: VectorFilter, top_k: int) -> list[VectorMatch]:
        with self._lock:
            candidates = [
                (vector_id, record) for vector_id, record in self._store.items() if filter.matches(record.metadata)
            ]
        ranked = sorted(
            (
                VectorMatch(id=vector_id, score=cosine_similarity(vector, record.vector), metadata=record.metadata)
                for vector_id, record in candidates
            ),
            key=lambda match: (-match.score, match.id),
        )
        return ranked[:top_k]

    async def delete(self, ids: list[str]) -> None:
        with self._lock:
            for vector_id in ids:
                self._store.pop(vector_id, None)

    def __len__(self) -> int:
        return len(self._store)


class FaissVectorStoreAdapter:
    """FAISS adapter via LangChain community integration.

    This adapter keeps the same retrieval contract as `InMemoryVectorStore` so
    it can be swapped in production with minimal code changes. Only vector
    queries are issued, so the wrapped embedder is reached through the async
    LangChain hooks.
    """

    def __init__(self, embedder: Embedder) -> None:
        try:
            from langchain_community.vectorstores import FAISS
            from langchain_core.embeddings import Embeddings
        except Exception as exc:  # pragma: no cover - import path is environment-dependent
            raise RuntimeError(
                "FAISS dependencies are not available. Install langchain-community/faiss-cpu."
            ) from exc

        class _EmbeddingAdapter(Embeddings):
            def __init__(self, adapter_embedder: Embedder) -> None:
                self._embedder = adapter_embedder

            def embed_documents(self, texts: list[str]) -> list[list[float]]:
                raise NotImplementedError("FaissVectorStoreAdapter is queried by vector only")

            def embed_query(self, text: str) -> list[float]:
                raise NotImplementedError("FaissVectorStoreAdapter is queried by vector only")

            async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
                return await self._embedder.embed_documents(texts)

            async def aembed_query(self, text: str) -> list[float]:
                return await self._embedder.embed_query(text)

        self._faiss_cls = FAISS
        self._embeddings = _EmbeddingAdapter(embedder)
        self._index: Any | None = None

    async def upsert(
        self, ids: list[str], vectors: list[list[float]], metadata: list[dict[str, Any]]
    ) -> None:
        if not (len(ids) == len(vectors) == len(metadata)):
            raise ValueError("ids, vectors and metadata must have the same length")
        if not ids:
            return
        texts = [str(meta.get("content", "")) for meta in metadata]
        pairs = list(zip(texts, vectors, strict=True))

        if self._index is None:
            self._index = self._faiss_cls.from_embeddings(
                text_embeddings=pairs,
                embedding=self._embeddings,
                metadatas=metadata,
                ids=ids,
            )
            return

        existing = [vector_id for vector_id in ids if vector_id in self._index.index_to_docstore_id.values()]
        if existing:
            self._index.delete(existing)
        self._index.add_embeddings(text_embeddings=pairs, metadatas=metadata, ids=ids)

    async def query(self, vector: list[float], filter: VectorFilter, top_k: int) -> list[VectorMatch]:
        if self._index is None:
            return []
        docs_and_distances = self._index.similarity_search_with_score_by_vector(
            embedding=vector,
            k=top_k,
            filter=filter.matches,
            fetch_k=max(top_k * 4, 20),
        )
        results: list[VectorMatch] = []
        for doc, distance in docs_and_distances:
            # L2 distance between unit vectors mapped onto [0, 1]
            score = max(0.0, 1.0 - float(distance) / sqrt(2))
            results.append(
                VectorMatch(
                    id=str(doc.id or doc.metadata.get("chunk_id", "")),
                    score=score,
                    metadata=dict(doc.metadata),
                )
            )
        return results

    async def delete(self, ids: list[str]) -> None:
        if self._index is None or not ids:
            return
        known = set(self._index.index_to_docstore_id.values())
        present = [vector_id for vector_id in ids if vector_id in known]
        if present:
            self._index.delete(present)
