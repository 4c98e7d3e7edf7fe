"""Query-time pipeline: parallel retrieval routes, fusion and context assembly."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from rag_core.config import BudgetAllocation, CoreConfig, HybridWeights
from rag_core.errors import DependencyError, ValidationError
from rag_core.ingest.embedder import Embedder
from rag_core.obs.tracing import Timer, TraceStore
from rag_core.resilience.circuit_breaker import CircuitBreakerRegistry
from rag_core.resilience.degradation import ServiceType
from rag_core.resilience.guard import ResilienceGuard
from rag_core.resilience.recovery import ErrorRecovery
from rag_core.resilience.retry import RetryExecutor
from rag_core.retrieval.authority import DomainAuthorityScorer
from rag_core.retrieval.bm25 import BM25Hit, IndexRegistry
from rag_core.retrieval.chunk_store import ChunkStore
from rag_core.retrieval.dedup import DeduplicationStats, Deduplicator
from rag_core.retrieval.diversity import DiversityFilter
from rag_core.retrieval.fusion import HybridMerger
from rag_core.retrieval.rerank import Reranker
from rag_core.retrieval.threshold import ThresholdDecision, ThresholdOptimizer
from rag_core.retrieval.vector_store import VectorFilter, VectorMatch, VectorStore
from rag_core.retrieval.web_search import WebSearchProvider
from rag_core.tokens.budget import TokenBudget, TokenBudgetAllocator
from rag_core.tokens.counter import TokenCounter
from rag_core.types import RerankedResult, RerankStrategy, ResultSource, ScoredResult, WebSearchResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class RetrievalFilters:
    """Tenant scope of a query. `user_id` is mandatory."""

    user_id: str
    topic_id: str | None = None
    document_ids: list[str] | None = None


@dataclass(slots=True)
class BudgetHints:
    model: str | None = None
    system_prompt: str | None = None
    user_prompt: str | None = None
    max_response_tokens: int | None = None
    allocation: BudgetAllocation | None = None
    top_k: int | None = None
    weights: HybridWeights | str | None = None
    enable_web_search: bool | None = None
    web_filters: dict[str, Any] | None = None


@dataclass(slots=True)
class BranchOutcome:
    service: str
    ok: bool
    results: int = 0
    latency_ms: float = 0.0
    error: str | None = None
    level: str | None = None


@dataclass(slots=True)
class RetrievalDiagnostics:
    branches: dict[str, BranchOutcome]
    affected_services: list[str]
    degradation_level: str
    degradation_message: str
    weights: dict[str, float] = field(default_factory=dict)
    threshold: ThresholdDecision | None = None
    deduplication: DeduplicationStats | None = None
    reranking: list[dict[str, Any]] = field(default_factory=list)
    budget_summary: str = ""
    budget_warnings: list[str] = field(default_factory=list)
    timings_ms: dict[str, float] = field(default_factory=dict)
    trace_id: str | None = None

    @property
    def degraded(self) -> bool:
        return bool(self.affected_services)


@dataclass(slots=True)
class RetrievalResponse:
    context: list[ScoredResult]
    web_context: list[WebSearchResult]
    diagnostics: RetrievalDiagnostics
    budget: TokenBudget


class _BranchFailure(Exception):
    def __init__(self, service: ServiceType, error: BaseException) -> None:
        super().__init__(str(error) or type(error).__name__)
        self.service = service
        self.error = error


class RagRetriever:
    """Runs the full retrieval pipeline for one query.

    Pipeline:
    1. Lexical, vector and (optionally) web routes run concurrently. Each
       dependency call goes through its circuit breaker and the retry
       executor, and every route is bounded by the request deadline.
    2. A failed route contributes nothing and is recorded as a degradation;
       only when every route fails does the request fail.
    3. Document results are fused, deduplicated, diversified with MMR, cut
       at the adaptive threshold and reranked; web results are deduplicated
       and reranked.
    4. The final context is fitted into the token budget.

    Route candidates are oversampled relative to `top_k` so relevant chunks
    survive the later filtering stages.
    """

    def __init__(
        self,
        *,
        index: IndexRegistry,
        vector_store: VectorStore,
        embedder: Embedder,
        config: CoreConfig | None = None,
        counter: TokenCounter | None = None,
        web_search: WebSearchProvider | None = None,
        chunk_store: ChunkStore | None = None,
        guard: ResilienceGuard | None = None,
        recovery: ErrorRecovery | None = None,
        reranker: Reranker | None = None,
        trace_store: TraceStore | None = None,
    ) -> None:
        self.config = config or CoreConfig()
        cfg = self.config
        self.index = index
        self.vector_store = vector_store
        self.embedder = embedder
        self.web_search = web_search
        self.chunk_store = chunk_store
        self.counter = counter or TokenCounter(cfg.tokens)
        self.guard = guard or ResilienceGuard(
            CircuitBreakerRegistry(cfg.circuit_breaker), RetryExecutor(cfg.retry)
        )
        self.breakers = self.guard.breakers
        self.degradation = self.guard.degradation
        self.recovery = recovery or ErrorRecovery(cfg.recovery, degradation=self.degradation)
        self.merger = HybridMerger(cfg.hybrid)
        self.deduplicator = Deduplicator(cfg.deduplication)
        self.diversity = DiversityFilter(cfg.diversity)
        self.threshold = ThresholdOptimizer(cfg.threshold)
        self.reranker = reranker or Reranker(
            cfg.reranking, authority=DomainAuthorityScorer(cfg.domain_authority)
        )
        self.budgets = TokenBudgetAllocator(self.counter, cfg.budget)
        self.trace_store = trace_store

    async def retrieve(
        self,
        query: str,
        filters: RetrievalFilters | Mapping[str, Any],
        budget_hints: BudgetHints | Mapping[str, Any] | None = None,
    ) -> RetrievalResponse:
        if isinstance(filters, RetrievalFilters):
            scope = filters
        else:
            scope = RetrievalFilters(
                user_id=str(filters.get("user_id") or ""),
                topic_id=filters.get("topic_id"),
                document_ids=filters.get("document_ids"),
            )
        if budget_hints is None:
            hints = BudgetHints()
        elif isinstance(budget_hints, BudgetHints):
            hints = budget_hints
        else:
            hints = BudgetHints(**budget_hints)
        if not query or not query.strip():
            raise ValidationError("query must not be empty")
        if not scope.user_id:
            raise ValidationError("user_id is required for retrieval")

        cfg = self.config.retrieval
        started = time.perf_counter()
        timings: dict[str, float] = {}
        top_k = hints.top_k or cfg.final_k

        budget = self.budgets.calculate_budget(
            hints.model,
            system_prompt=hints.system_prompt,
            user_prompt=hints.user_prompt,
            allocation=hints.allocation,
            max_response_tokens=hints.max_response_tokens,
        )

        use_web = cfg.enable_web_search if hints.enable_web_search is None else hints.enable_web_search
        lexical_k = max(cfg.lexical_k, top_k * cfg.oversample_factor)
        vector_k = max(cfg.vector_k, top_k * cfg.oversample_factor)

        branches: dict[str, tuple[ServiceType, Awaitable[list[Any]]]] = {
            "lexical": (ServiceType.LEXICAL, self._lexical(query, scope, lexical_k)),
            "vector": (ServiceType.VECTOR, self._vector(query, scope, vector_k)),
        }
        if use_web and self.web_search is not None:
            branches["web"] = (
                ServiceType.WEB_SEARCH, self._web(self.web_search, query, hints.web_filters, cfg.web_k)
            )

        with Timer() as timer:
            gathered = await asyncio.gather(
                *(
                    self._run_branch(name, service, coro, cfg.request_deadline)
                    for name, (service, coro) in branches.items()
                )
            )
        timings["retrieval"] = timer.elapsed_ms

        results = {name: items for name, items, _ in gathered}
        outcomes = {name: outcome for name, _, outcome in gathered}
        if not any(outcome.ok for outcome in outcomes.values()):
            raise DependencyError(
                "All retrieval branches failed",
                details={name: outcome.error for name, outcome in outcomes.items()},
            )

        with Timer() as timer:
            weights = self.merger.resolve_weights(scope.user_id, hints.weights)
            merged = self.merger.merge(
                results["lexical"], results["vector"], weights, max_results=top_k * cfg.oversample_factor
            )
            deduped, dedup_stats = self.deduplicator.deduplicate(merged)
            diverse = self.diversity.select(deduped, max_results=top_k * 2)
        timings["fusion"] = timer.elapsed_ms

        decision: ThresholdDecision | None = None
        candidates = diverse
        if cfg.use_adaptive_threshold:
            prior = [r.vector_score for r in diverse if r.vector_score is not None]
            decision = self.threshold.calculate_threshold(query, prior)
            # lexical matches stand on their own; the cutoff applies to cosine scores
            candidates = [
                r
                for r in diverse
                if r.lexical_score is not None or (r.vector_score or 0.0) >= decision.threshold
            ]

        web_results: list[WebSearchResult] = results.get("web", [])
        if web_results:
            web_results, _ = self.deduplicator.deduplicate(web_results)

        with Timer() as timer:
            reranked_docs = await self._rerank(query, candidates)
            reranked_web = await self._rerank(query, web_results)
        timings["rerank"] = timer.elapsed_ms

        documents = [_with_reranked_score(r) for r in reranked_docs[:top_k]]
        web_context = [_with_reranked_score(r) for r in reranked_web[: cfg.web_k]]

        with Timer() as timer:
            allocation = self.budgets.allocate_context(budget, documents, web_context)
        budget = allocation.budget
        timings["budget"] = timer.elapsed_ms
        timings["total"] = (time.perf_counter() - started) * 1000.0

        status = self.degradation.overall_status()
        diagnostics = RetrievalDiagnostics(
            branches=outcomes,
            affected_services=[service.value for service in status.affected_services],
            degradation_level=status.level.value,
            degradation_message=status.message,
            weights={"vector": weights.vector, "lexical": weights.lexical},
            threshold=decision,
            deduplication=dedup_stats,
            reranking=[_factor_breakdown(r) for r in reranked_docs[:top_k]],
            budget_summary=TokenBudgetAllocator.summary(budget),
            budget_warnings=list(budget.warnings),
            timings_ms=timings,
        )

        if self.trace_store is not None:
            trace = self.trace_store.create_record(
                query=query,
                user_id=scope.user_id,
                lexical_results=outcomes["lexical"].results,
                vector_results=outcomes["vector"].results,
                web_results=outcomes["web"].results if "web" in outcomes else 0,
                context_results=len(allocation.document_context),
                degraded_services=diagnostics.affected_services,
                degradation_level=diagnostics.degradation_level,
                threshold=decision.threshold if decision else None,
                document_tokens=allocation.document_tokens,
                web_tokens=allocation.web_tokens,
                latency_ms=timings["total"],
                stage_timings_ms=timings,
            )
            diagnostics.trace_id = trace.trace_id

        logger.info(
            "Retrieval completed",
            extra={
                "user_id": scope.user_id,
                "context": len(allocation.document_context),
                "web": len(allocation.web_results),
                "degradation": status.level.value,
                "latency_ms": timings["total"],
            },
        )
        return RetrievalResponse(
            context=allocation.document_context,
            web_context=allocation.web_results,
            diagnostics=diagnostics,
            budget=budget,
        )

    async def _run_branch(
        self, name: str, service: ServiceType, coro: Awaitable[list[Any]], deadline: float
    ) -> tuple[str, list[Any], BranchOutcome]:
        started = time.perf_counter()
        try:
            items = await asyncio.wait_for(coro, timeout=deadline)
        except asyncio.TimeoutError as exc:
            level = self.degradation.record_failure(service, exc)
            error = f"deadline of {deadline}s exceeded"
        except _BranchFailure as exc:
            level = self.degradation.level(exc.service)
            error = f"{exc.service.value}: {exc}"
        else:
            return name, items, BranchOutcome(
                service=service.value,
                ok=True,
                results=len(items),
                latency_ms=(time.perf_counter() - started) * 1000.0,
            )
        logger.warning("Retrieval branch degraded", extra={"branch": name, "error": error})
        return name, [], BranchOutcome(
            service=service.value,
            ok=False,
            latency_ms=(time.perf_counter() - started) * 1000.0,
            error=error,
            level=level.value,
        )

    async def _guarded(self, service: ServiceType, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await self.guard.call(service, fn)
        except Exception as exc:
            raise _BranchFailure(service, exc) from exc

    async def _lexical(self, query: str, scope: RetrievalFilters, top_k: int) -> list[ScoredResult]:
        async def _search() -> list[BM25Hit]:
            return self.index.search(
                query,
                user_id=scope.user_id,
                topic_id=scope.topic_id,
                document_ids=scope.document_ids,
                top_k=top_k,
            )

        hits = await self._guarded(ServiceType.LEXICAL, _search)
        return [_from_hit(hit) for hit in hits]

    async def _vector(self, query: str, scope: RetrievalFilters, top_k: int) -> list[ScoredResult]:
        vector = await self._guarded(ServiceType.EMBEDDING, lambda: self.embedder.embed_query(query))
        where = VectorFilter(user_id=scope.user_id, topic_id=scope.topic_id, document_ids=scope.document_ids)
        matches = await self._guarded(ServiceType.VECTOR, lambda: self.vector_store.query(vector, where, top_k))
        return [self._from_match(match) for match in matches]

    async def _web(
        self, provider: WebSearchProvider, query: str, filters: dict[str, Any] | None, limit: int
    ) -> list[WebSearchResult]:
        return await self._guarded(
            ServiceType.WEB_SEARCH, lambda: provider.search(query, filters, max_results=limit)
        )

    async def _rerank(self, query: str, items: list[Any]) -> list[RerankedResult]:
        if not items:
            return []
        if not self.config.retrieval.enable_reranking:
            return await self.reranker.rerank(query, items, strategy=RerankStrategy.NONE)
        try:
            return await self.reranker.rerank(query, items)
        except Exception as exc:
            recovery = await self.recovery.attempt_recovery(
                ServiceType.RERANKING,
                exc,
                lambda: self.reranker.rerank(query, items),
                lambda: self.reranker.rerank(query, items, strategy=RerankStrategy.SCORE_BASED),
            )
            if recovery.recovered and recovery.result is not None:
                return recovery.result
            self.degradation.record_failure(ServiceType.RERANKING, exc)
            return await self.reranker.rerank(query, items, strategy=RerankStrategy.NONE)

    def _from_match(self, match: VectorMatch) -> ScoredResult:
        metadata = dict(match.metadata)
        document_id = str(metadata.get("document_id", ""))
        chunk_index = int(metadata.get("chunk_index", 0))
        content = str(metadata.pop("content", "") or "")
        if not content and self.chunk_store is not None:
            chunk = self.chunk_store.get(str(metadata.get("user_id", "")), document_id, chunk_index)
            content = chunk.content if chunk is not None else ""
        return ScoredResult(
            document_id=document_id,
            chunk_index=chunk_index,
            content=content,
            score=match.score,
            source=ResultSource.VECTOR,
            metadata=metadata,
            vector_score=match.score,
        )


def _from_hit(hit: BM25Hit) -> ScoredResult:
    document = hit.document
    return ScoredResult(
        document_id=document.document_id,
        chunk_index=document.chunk_index,
        content=document.content,
        score=hit.score,
        source=ResultSource.LEXICAL,
        metadata={**document.metadata, "chunk_id": document.id, "topic_id": document.topic_id},
        lexical_score=hit.score,
    )


def _with_reranked_score(reranked: RerankedResult) -> Any:
    item = reranked.item
    if isinstance(item, ScoredResult):
        return replace(
            item,
            score=reranked.reranked_score,
            metadata={**item.metadata, "rank_change": reranked.rank_change},
        )
    return replace(item, score=reranked.reranked_score)


def _factor_breakdown(reranked: RerankedResult) -> dict[str, Any]:
    item = reranked.item
    return {
        "key": item.key if isinstance(item, ScoredResult) else item.url,
        "relevance": reranked.relevance_score,
        "domain_authority": reranked.domain_authority_score,
        "freshness": reranked.freshness_score,
        "original": reranked.original_score,
        "reranked": reranked.reranked_score,
        "rank_change": reranked.rank_change,
    }
