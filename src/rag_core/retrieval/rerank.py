"""Multi-factor reranking of document and web results."""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from typing import TypeVar

from rag_core.config import RerankingConfig
from rag_core.errors import ValidationError
from rag_core.retrieval.authority import DomainAuthorityScorer, extract_domain
from rag_core.types import RerankedResult, RerankStrategy, ScoredResult, WebSearchResult

logger = logging.getLogger(__name__)

PairScorer = Callable[[str, list[str]], Awaitable[list[float]]]

_NON_WORD = re.compile(r"[^\w]")
_Item = TypeVar("_Item", ScoredResult, WebSearchResult)

_NEUTRAL = 0.5
_FUTURE_PENALTY = 0.3
_MIN_DECAY = 0.3
# (max age in days, freshness multiplier before the boost). Not monotonic: the
# boosted 91-180 day step (0.91 at the default boost) sits below the flat 1.0
# given to items up to a year old.
_FRESHNESS_STEPS = ((7, 1.0), (30, 0.9), (90, 0.8), (180, 0.7))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Reranker:
    """Re-scores results from relevance, authority, freshness and original score.

    `rerank` dispatches once per call on the configured strategy:
    `SCORE_BASED` blends the four factors with the configured weights,
    `CROSS_ENCODER` takes relevance from an injected async pair scorer, and
    `NONE` keeps the input order.
    """

    def __init__(
        self,
        config: RerankingConfig | None = None,
        *,
        authority: DomainAuthorityScorer | None = None,
        pair_scorer: PairScorer | None = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.config = config or RerankingConfig()
        self.authority = authority or DomainAuthorityScorer()
        self.pair_scorer = pair_scorer
        self._now = now
        if abs(self.config.weight_sum() - 1.0) > 0.05:
            logger.warning("Reranking weights do not sum to 1.0", extra={"sum": self.config.weight_sum()})

    async def rerank(
        self,
        query: str,
        results: Sequence[_Item],
        *,
        strategy: RerankStrategy | None = None,
    ) -> list[RerankedResult]:
        selected = strategy or self.config.strategy
        if not results:
            return []
        if selected is RerankStrategy.SCORE_BASED:
            return self.score_based(query, results)
        if selected is RerankStrategy.CROSS_ENCODER:
            return await self._cross_encoder(query, results)
        if selected is RerankStrategy.NONE:
            return [
                self._factors(query, item, rank, reranked=_clamp(item.score))
                for rank, item in enumerate(results)
            ]
        raise ValueError(f"Unsupported rerank strategy: {selected}")

    def score_based(self, query: str, results: Sequence[_Item]) -> list[RerankedResult]:
        cfg = self.config
        scored = []
        for rank, item in enumerate(results):
            factors = self._factors(query, item, rank, reranked=0.0)
            factors.reranked_score = (
                factors.relevance_score * cfg.relevance_weight
                + factors.domain_authority_score * cfg.domain_authority_weight
                + factors.freshness_score * cfg.freshness_weight
                + factors.original_score * cfg.original_score_weight
            )
            scored.append(factors)
        ordered = self._ordered(scored)
        logger.info("Results re-ranked", extra={"count": len(ordered), "strategy": "score-based"})
        return ordered

    def relevance_score(self, query: str, title: str, content: str) -> float:
        """Keyword hits in title and body; an exact phrase in the title counts double."""

        query_lower = query.lower()
        title_lower = title.lower()
        content_lower = content.lower()
        keywords = [_NON_WORD.sub("", word) for word in query_lower.split() if len(word) >= 3]
        keywords = [word for word in keywords if word]
        if not keywords:
            return _NEUTRAL

        phrase_in_title = query_lower.strip() in title_lower
        title_score = 0.0
        for keyword in keywords:
            if keyword in title_lower:
                title_score += 2 if phrase_in_title else 1
        title_score /= len(keywords)
        content_score = sum(1 for keyword in keywords if keyword in content_lower) / len(keywords)

        combined = title_score * self.config.title_match_weight + content_score * self.config.content_match_weight
        return _clamp(combined)

    def domain_authority_score(self, url: str) -> float:
        domain = extract_domain(url)
        if not domain:
            return _NEUTRAL
        for trusted in self.config.trusted_domains:
            if domain == trusted or domain.endswith(f".{trusted}"):
                return 1.0
        return self.authority.score(url).score

    def freshness_score(self, published_date: str | None) -> float:
        if not published_date:
            return _NEUTRAL
        published = _parse_date(published_date)
        if published is None:
            return _NEUTRAL
        days = (self._now() - published).total_seconds() / 86400
        if days < 0:
            return _FUTURE_PENALTY
        boost = self.config.max_freshness_boost
        for limit, factor in _FRESHNESS_STEPS:
            if days <= limit:
                return factor * boost
        if days <= 365:
            return 1.0
        return max(_MIN_DECAY, 1.0 - (days - 365) / self.config.freshness_decay_days)

    async def _cross_encoder(self, query: str, results: Sequence[_Item]) -> list[RerankedResult]:
        if self.pair_scorer is None:
            raise ValidationError("cross-encoder reranking requires a pair scorer")
        scores = await self.pair_scorer(query, [item.content for item in results])
        if len(scores) != len(results):
            raise ValidationError("pair scorer returned a score count that does not match the results")
        scored = []
        for rank, (item, score) in enumerate(zip(results, scores)):
            factors = self._factors(query, item, rank, reranked=_clamp(score))
            factors.relevance_score = _clamp(score)
            scored.append(factors)
        return self._ordered(scored)

    def _factors(
        self, query: str, item: ScoredResult | WebSearchResult, rank: int, *, reranked: float
    ) -> RerankedResult:
        return RerankedResult(
            item=item,
            relevance_score=self.relevance_score(query, item.title, item.content),
            domain_authority_score=self.domain_authority_score(item.url),
            freshness_score=self.freshness_score(item.published_date),
            original_score=_clamp(item.score),
            reranked_score=reranked,
            original_rank=rank,
        )

    @staticmethod
    def _ordered(scored: list[RerankedResult]) -> list[RerankedResult]:
        ordered = sorted(scored, key=lambda r: (-r.reranked_score, r.original_rank))
        for new_rank, result in enumerate(ordered):
            result.rank_change = result.original_rank - new_rank
        return ordered


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def _parse_date(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
