"""Web search collaborator contract."""

from __future__ import annotations

from typing import Any, Protocol

from rag_core.retrieval.bm25 import tokenize
from rag_core.types import WebSearchResult


class WebSearchProvider(Protocol):
    async def search(
        self, query: str, filters: dict[str, Any] | None = None, *, max_results: int = 5
    ) -> list[WebSearchResult]:
        """Return live web results for a query."""


class StaticWebSearchProvider:
    """Serves a fixed result list ranked by query-term overlap.

    Used for local runs and tests where no search API is configured.
    """

    def __init__(self, results: list[WebSearchResult] | None = None) -> None:
        self.results = list(results or [])

    async def search(
        self, query: str, filters: dict[str, Any] | None = None, *, max_results: int = 5
    ) -> list[WebSearchResult]:
        terms = set(tokenize(query))
        if not terms:
            return []
        excluded = set((filters or {}).get("exclude_domains", []))

        scored: list[tuple[float, WebSearchResult]] = []
        for result in self.results:
            if any(domain in result.url for domain in excluded):
                continue
            words = set(tokenize(f"{result.title} {result.content}"))
            overlap = len(terms & words) / len(terms)
            if overlap > 0:
                scored.append((overlap, result))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [result for _, result in scored[:max_results]]
