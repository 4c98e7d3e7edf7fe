import asyncio

from rag_core.config import BudgetConfig, CoreConfig, TokenCounterConfig
from rag_core.ingest.chunker import AdaptiveChunker
from rag_core.ingest.embedder import HashingEmbedder
from rag_core.ingest.pipeline import IngestPipeline
from rag_core.resilience.guard import ResilienceGuard
from rag_core.retrieval.bm25 import IndexRegistry
from rag_core.retrieval.chunk_store import InMemoryChunkStore
from rag_core.retrieval.langchain_bridge import RagCoreLangChainRetriever, to_document
from rag_core.retrieval.retriever import RagRetriever
from rag_core.retrieval.vector_store import InMemoryVectorStore
from rag_core.tokens.counter import WORD_ENCODING, TokenCounter
from rag_core.types import WebSearchResult


def _retriever() -> RagRetriever:
    config = CoreConfig(
        tokens=TokenCounterConfig(default_encoding=WORD_ENCODING), budget=BudgetConfig(encoding=WORD_ENCODING)
    )
    counter = TokenCounter(config.tokens)
    embedder = HashingEmbedder()
    vector_store = InMemoryVectorStore()
    chunk_store = InMemoryChunkStore()
    index = IndexRegistry(config.bm25, chunk_store)
    guard = ResilienceGuard()
    pipeline = IngestPipeline(
        chunker=AdaptiveChunker(counter, config.chunking),
        embedder=embedder,
        vector_store=vector_store,
        index=index,
        chunk_store=chunk_store,
        guard=guard,
    )
    asyncio.run(
        pipeline.ingest_document(
            "policy", "Company policy states employees must encrypt customer data at rest.", user_id="u1"
        )
    )
    return RagRetriever(
        index=index,
        vector_store=vector_store,
        embedder=embedder,
        config=config,
        counter=counter,
        chunk_store=chunk_store,
        guard=guard,
    )


def test_langchain_retriever_returns_scored_documents() -> None:
    bridge = RagCoreLangChainRetriever(retriever=_retriever(), user_id="u1", top_k=2)

    documents = bridge.invoke("encrypt customer data")

    assert documents[0].metadata["document_id"] == "policy"
    assert documents[0].metadata["lexical_score"] > 0
    assert "encrypt" in documents[0].page_content


def test_langchain_retriever_is_tenant_scoped() -> None:
    bridge = RagCoreLangChainRetriever(retriever=_retriever(), user_id="someone-else")

    assert asyncio.run(bridge.ainvoke("encrypt customer data")) == []


def test_web_results_convert_to_documents() -> None:
    document = to_document(
        WebSearchResult(title="Guide", url="https://docs.python.org", content="body", score=0.4)
    )

    assert document.page_content == "body"
    assert document.metadata["source"] == "web"
    assert document.metadata["url"] == "https://docs.python.org"
