"""End-to-end ingest pipeline: detect -> chunk -> store -> index -> embed -> upsert."""

from __future__ import annotations

import logging
import threading
from typing import Any

from rag_core.errors import NotFoundError, ValidationError
from rag_core.ingest.chunker import AdaptiveChunker, ChunkSource
from rag_core.ingest.doctype import detect_document_type
from rag_core.ingest.embedder import Embedder
from rag_core.resilience.degradation import ServiceType
from rag_core.resilience.guard import ResilienceGuard
from rag_core.retrieval.bm25 import IndexRegistry
from rag_core.retrieval.chunk_store import ChunkStore
from rag_core.retrieval.vector_store import VectorStore, chunk_metadata
from rag_core.types import Chunk, ChunkingStrategy, DocumentType

logger = logging.getLogger(__name__)


class IngestPipeline:
    """Coordinates chunking, lexical indexing and vector upsert for one document.

    Ingestion is isolated from query-time retrieval so indexing can run
    offline, in batch jobs, or during deployment warm-up. Document ids are
    scoped per user: re-ingesting an id replaces only that user's chunks.

    The chunk store and the lexical index are local and always updated. The
    embedding and vector store calls go through the resilience layer; when
    they fail, the document stays lexically searchable and is remembered in
    `pending_vectors` until `sync_pending_vectors` succeeds.
    """

    def __init__(
        self,
        *,
        chunker: AdaptiveChunker,
        embedder: Embedder,
        vector_store: VectorStore,
        index: IndexRegistry,
        chunk_store: ChunkStore,
        guard: ResilienceGuard | None = None,
    ) -> None:
        self._chunker = chunker
        self._embedder = embedder
        self._vector_store = vector_store
        self._index = index
        self._chunk_store = chunk_store
        self._guard = guard or ResilienceGuard()
        self._pending: set[tuple[str, str]] = set()
        self._pending_lock = threading.Lock()

    @property
    def pending_vectors(self) -> list[str]:
        with self._pending_lock:
            return sorted({document_id for _, document_id in self._pending})

    def is_pending(self, user_id: str, document_id: str) -> bool:
        with self._pending_lock:
            return (user_id, document_id) in self._pending

    async def ingest_document(
        self,
        document_id: str,
        raw_text: str,
        *,
        user_id: str,
        topic_id: str | None = None,
        document_type: DocumentType | None = None,
        filename: str | None = None,
        mime_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        strategy: ChunkingStrategy | None = None,
    ) -> list[Chunk]:
        """Chunk and index one document, returning the created chunks."""

        if not document_id:
            raise ValidationError("document_id is required")
        if not user_id:
            raise ValidationError("user_id is required")

        detected = document_type or detect_document_type(filename, mime_type, raw_text)
        source = ChunkSource(
            document_id=document_id,
            user_id=user_id,
            topic_id=topic_id,
            metadata={**(metadata or {}), **({"filename": filename} if filename else {})},
        )
        chunks = await self._chunker.chunk(raw_text, source, document_type=detected, strategy=strategy)

        previous = self._chunk_store.list_document(user_id, document_id)
        if previous:
            await self._drop(document_id, user_id, previous)

        self._chunk_store.put_many(chunks)
        indexed = self._index.add_chunks(chunks)
        vectors_ok = await self._upsert_vectors(document_id, user_id, chunks)

        logger.info(
            "Document ingested",
            extra={
                "document_id": document_id,
                "document_type": detected.value,
                "chunks": len(chunks),
                "indexed": indexed,
                "vectors": vectors_ok,
            },
        )
        return chunks

    async def remove_document(self, document_id: str, *, user_id: str) -> int:
        """Delete a document's chunks everywhere and return how many were removed."""

        chunks = self._chunk_store.list_document(user_id, document_id)
        if not chunks:
            raise NotFoundError(f"Document not found: {document_id}")
        return await self._drop(document_id, user_id, chunks)

    async def sync_pending_vectors(self) -> int:
        """Retry vector upserts for documents whose earlier upsert failed."""

        with self._pending_lock:
            pending = list(self._pending)
        synced = 0
        for user_id, document_id in pending:
            chunks = self._chunk_store.list_document(user_id, document_id)
            if await self._upsert_vectors(document_id, user_id, chunks):
                synced += 1
        return synced

    async def _drop(self, document_id: str, user_id: str, chunks: list[Chunk]) -> int:
        removed = self._chunk_store.delete_document(user_id, document_id)
        self._index.remove_document(user_id, document_id)
        with self._pending_lock:
            self._pending.discard((user_id, document_id))
        ids = [chunk.id for chunk in chunks]
        try:
            await self._guard.call(ServiceType.VECTOR, lambda: self._vector_store.delete(ids))
        except Exception as exc:
            # orphaned vectors are unreachable: their chunks no longer hydrate
            logger.warning(
                "Vector delete failed", extra={"document_id": document_id, "error": str(exc)}
            )
        logger.info("Document removed", extra={"document_id": document_id, "chunks": removed})
        return removed

    async def _upsert_vectors(self, document_id: str, user_id: str, chunks: list[Chunk]) -> bool:
        indexable = [chunk for chunk in chunks if chunk.token_count > 0 and chunk.content.strip()]
        if not indexable:
            return True
        texts = [chunk.content for chunk in indexable]
        try:
            vectors = await self._guard.call(
                ServiceType.EMBEDDING, lambda: self._embedder.embed_documents(texts)
            )
            await self._guard.call(
                ServiceType.VECTOR,
                lambda: self._vector_store.upsert(
                    [chunk.id for chunk in indexable],
                    vectors,
                    [chunk_metadata(chunk) for chunk in indexable],
                ),
            )
        except Exception as exc:
            with self._pending_lock:
                self._pending.add((user_id, document_id))
            logger.warning(
                "Vector upsert deferred, document is lexically searchable only",
                extra={"document_id": document_id, "error": str(exc)},
            )
            return False
        with self._pending_lock:
            self._pending.discard((user_id, document_id))
        return True
