"""Expose the hybrid retriever as a LangChain retriever."""

from __future__ import annotations

import asyncio
from typing import Any

from langchain_core.callbacks import AsyncCallbackManagerForRetrieverRun, CallbackManagerForRetrieverRun
from langchain_core.documents import Document
from langchain_core.retrievers import BaseRetriever
from pydantic import ConfigDict

from rag_core.retrieval.retriever import BudgetHints, RagRetriever, RetrievalFilters
from rag_core.types import ScoredResult, WebSearchResult


class RagCoreLangChainRetriever(BaseRetriever):
    """Tenant-scoped adapter so LangChain chains can call `RagRetriever`.

    Every document carries its scores in metadata; web results are appended
    after document context when web search is enabled.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    retriever: RagRetriever
    user_id: str
    topic_id: str | None = None
    top_k: int | None = None
    include_web: bool = True

    def _get_relevant_documents(
        self, query: str, *, run_manager: CallbackManagerForRetrieverRun
    ) -> list[Document]:
        return asyncio.run(self._retrieve(query))

    async def _aget_relevant_documents(
        self, query: str, *, run_manager: AsyncCallbackManagerForRetrieverRun
    ) -> list[Document]:
        return await self._retrieve(query)

    async def _retrieve(self, query: str) -> list[Document]:
        response = await self.retriever.retrieve(
            query,
            RetrievalFilters(user_id=self.user_id, topic_id=self.topic_id),
            BudgetHints(top_k=self.top_k),
        )
        documents = [to_document(item) for item in response.context]
        if self.include_web:
            documents.extend(to_document(item) for item in response.web_context)
        return documents


def to_document(item: ScoredResult | WebSearchResult) -> Document:
    if isinstance(item, WebSearchResult):
        metadata: dict[str, Any] = {
            "source": "web",
            "url": item.url,
            "title": item.title,
            "score": item.score,
            "published_date": item.published_date,
        }
        return Document(page_content=item.content, metadata=metadata)
    metadata = {
        **item.metadata,
        "document_id": item.document_id,
        "chunk_index": item.chunk_index,
        "source": item.source.value,
        "score": item.score,
        "lexical_score": item.lexical_score,
        "vector_score": item.vector_score,
    }
    return Document(page_content=item.content, metadata=metadata)
