"""FastAPI entrypoint for ingest/retrieve/resilience/trace endpoints."""

from __future__ import annotations

import os
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from rag_core.config import BudgetAllocation, CoreConfig, HybridWeights
from rag_core.errors import RagCoreError
from rag_core.ingest.chunker import AdaptiveChunker
from rag_core.ingest.embedder import CachedEmbedder, Embedder, HashingEmbedder
from rag_core.ingest.pipeline import IngestPipeline
from rag_core.obs.log import configure_logging
from rag_core.obs.tracing import TraceStore
from rag_core.resilience.circuit_breaker import CircuitBreakerRegistry
from rag_core.resilience.guard import ResilienceGuard
from rag_core.resilience.retry import RetryExecutor
from rag_core.retrieval.bm25 import IndexRegistry
from rag_core.retrieval.chunk_store import InMemoryChunkStore
from rag_core.retrieval.retriever import BudgetHints, RagRetriever, RetrievalFilters
from rag_core.retrieval.vector_store import InMemoryVectorStore
from rag_core.tokens.counter import TokenCounter
from rag_core.types import ChunkingStrategy, DocumentType


def _create_embedder() -> Embedder:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return HashingEmbedder()

    from rag_core.ingest.embedder import OpenAIEmbeddingProvider

    return OpenAIEmbeddingProvider(model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"))


def _http_error(exc: RagCoreError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


class IngestRequest(BaseModel):
    document_id: str = Field(min_length=1)
    text: str
    user_id: str = Field(min_length=1)
    topic_id: str | None = None
    document_type: DocumentType | None = None
    filename: str | None = None
    mime_type: str | None = None
    strategy: ChunkingStrategy | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RetrieveRequest(BaseModel):
    query: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    topic_id: str | None = None
    document_ids: list[str] | None = None
    top_k: int | None = Field(default=None, ge=1, le=50)
    model: str | None = None
    system_prompt: str | None = None
    user_prompt: str | None = None
    max_response_tokens: int | None = Field(default=None, ge=0)
    allocation: BudgetAllocation | None = None
    weights: HybridWeights | str | None = None
    enable_web_search: bool | None = None


app = FastAPI(title="RAG Retrieval Core", version="0.1.0")

_config = CoreConfig.from_env()
configure_logging(_config.log_level)

_counter = TokenCounter(_config.tokens)
_embedder = CachedEmbedder(_create_embedder())
_vector_store = InMemoryVectorStore()
_chunk_store = InMemoryChunkStore()
_index = IndexRegistry(_config.bm25, _chunk_store)
_guard = ResilienceGuard(
    CircuitBreakerRegistry(_config.circuit_breaker),
    RetryExecutor(_config.retry),
)
_trace_store = TraceStore()

_ingest_pipeline = IngestPipeline(
    chunker=AdaptiveChunker(_counter, _config.chunking, _embedder),
    embedder=_embedder,
    vector_store=_vector_store,
    index=_index,
    chunk_store=_chunk_store,
    guard=_guard,
)
_retriever = RagRetriever(
    index=_index,
    vector_store=_vector_store,
    embedder=_embedder,
    config=_config,
    counter=_counter,
    chunk_store=_chunk_store,
    guard=_guard,
    trace_store=_trace_store,
)


@app.get("/health")
def health() -> dict[str, Any]:
    status = _guard.degradation.overall_status()
    circuits = _guard.breakers.health_check()
    return {
        "status": "ok" if circuits["healthy"] and not status.affected_services else "degraded",
        "embedder": _embedder.model,
        "degradation": status.to_dict(),
        "circuits": circuits["circuits"],
        "pending_vectors": _ingest_pipeline.pending_vectors,
        "trace_count": len(_trace_store),
    }


@app.post("/ingest")
async def ingest(request: IngestRequest) -> dict[str, Any]:
    try:
        chunks = await _ingest_pipeline.ingest_document(
            request.document_id,
            request.text,
            user_id=request.user_id,
            topic_id=request.topic_id,
            document_type=request.document_type,
            filename=request.filename,
            mime_type=request.mime_type,
            metadata=request.metadata,
            strategy=request.strategy,
        )
    except RagCoreError as exc:
        raise _http_error(exc) from exc

    return {
        "document_id": request.document_id,
        "chunks_created": len(chunks),
        "chunk_ids": [chunk.id for chunk in chunks],
        "total_tokens": sum(chunk.token_count for chunk in chunks),
        "vectors_pending": _ingest_pipeline.is_pending(request.user_id, request.document_id),
    }


@app.delete("/documents/{document_id}")
async def delete_document(document_id: str, user_id: str) -> dict[str, Any]:
    try:
        removed = await _ingest_pipeline.remove_document(document_id, user_id=user_id)
    except RagCoreError as exc:
        raise _http_error(exc) from exc
    return {"document_id": document_id, "chunks_removed": removed}


@app.post("/retrieve")
async def retrieve(request: RetrieveRequest) -> dict[str, Any]:
    hints = BudgetHints(
        model=request.model,
        system_prompt=request.system_prompt,
        user_prompt=request.user_prompt,
        max_response_tokens=request.max_response_tokens,
        allocation=request.allocation,
        top_k=request.top_k,
        weights=request.weights,
        enable_web_search=request.enable_web_search,
    )
    filters = RetrievalFilters(
        user_id=request.user_id,
        topic_id=request.topic_id,
        document_ids=request.document_ids,
    )
    try:
        response = await _retriever.retrieve(request.query, filters, hints)
    except RagCoreError as exc:
        raise _http_error(exc) from exc
    return jsonable_encoder(
        {
            "context": response.context,
            "web_context": response.web_context,
            "diagnostics": response.diagnostics,
            "budget": response.budget,
            "degraded": response.diagnostics.degraded,
        }
    )


@app.get("/index/stats")
def index_stats() -> dict[str, Any]:
    return {
        "lexical": _index.stats(),
        "chunks": len(_chunk_store),
        "vectors": len(_vector_store),
        "embedding_cache": _embedder.stats(),
        "tokenizer_cache": _counter.cache_stats(),
    }


@app.get("/circuits")
def circuits() -> dict[str, Any]:
    return {"items": _guard.breakers.stats(), "retry": _guard.retry.stats()}


@app.post("/circuits/{name}/reset")
def reset_circuit(name: str) -> dict[str, Any]:
    try:
        _guard.breakers.reset(name)
    except RagCoreError as exc:
        raise _http_error(exc) from exc
    return _guard.breakers.stats(name)


@app.get("/traces")
def traces(limit: int = 20) -> dict[str, Any]:
    records = [asdict(record) for record in _trace_store.list_recent(limit=limit)]
    return {"items": records}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str) -> dict[str, Any]:
    try:
        record = _trace_store.get(trace_id)
    except RagCoreError as exc:
        raise _http_error(exc) from exc
    return asdict(record)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return {
        **_trace_store.summary(),
        "degradation": _guard.degradation.stats(),
        "retry": _guard.retry.stats(),
        "recovery": _retriever.recovery.stats(),
    }
