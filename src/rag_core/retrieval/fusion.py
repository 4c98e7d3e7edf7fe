"""Weighted fusion of lexical and vector retrieval results."""

from __future__ import annotations

import logging
from dataclasses import replace
from hashlib import md5

from rag_core.config import WEIGHT_PRESETS, ABTestConfig, HybridSearchConfig, HybridWeights
from rag_core.retrieval.dedup import jaccard_similarity
from rag_core.types import ResultSource, ScoredResult

logger = logging.getLogger(__name__)


def select_ab_variant(user_id: str, config: ABTestConfig) -> HybridWeights:
    """Deterministic variant for a user: the same id always lands in the same bucket."""

    if not config.enabled or not config.variants:
        return HybridSearchConfig().default_weights
    bucket = int(md5(user_id.encode("utf-8")).hexdigest(), 16) % 100
    cumulative = 0
    for variant in config.variants:
        cumulative += variant.traffic_percentage
        if bucket < cumulative:
            return variant.weights
    for variant in config.variants:
        if variant.name == config.default_variant:
            return variant.weights
    return config.variants[0].weights


class HybridMerger:
    """Fuses lexical and vector lists into one ranked list.

    Fusion process:
    1. Min-max normalize each list to [0, 1] within itself, since BM25 and
       cosine scores live on different scales.
    2. Weight each normalized score; a result found by both routes gets the
       sum and `source=both`.
    3. Sort by the fused score, drop near-identical content, apply the score
       floor and truncate.
    """

    def __init__(self, config: HybridSearchConfig | None = None) -> None:
        self.config = config or HybridSearchConfig()

    def resolve_weights(
        self,
        user_id: str | None = None,
        weights: HybridWeights | str | None = None,
        *,
        use_ab_testing: bool | None = None,
    ) -> HybridWeights:
        if isinstance(weights, str):
            weights = WEIGHT_PRESETS.get(weights)
        if weights is not None:
            return self._valid_or_default(weights)
        ab = self.config.ab_testing
        enabled = ab.enabled if use_ab_testing is None else use_ab_testing
        if enabled and user_id:
            variant = select_ab_variant(user_id, ab.model_copy(update={"enabled": True}))
            logger.debug("A/B test variant selected", extra={"user_id": user_id})
            return self._valid_or_default(variant)
        return self._valid_or_default(self.config.default_weights)

    def merge(
        self,
        lexical: list[ScoredResult],
        vector: list[ScoredResult],
        weights: HybridWeights | None = None,
        *,
        min_score: float | None = None,
        max_results: int | None = None,
        enable_deduplication: bool | None = None,
    ) -> list[ScoredResult]:
        resolved = self._valid_or_default(weights or self.config.default_weights)

        merged: dict[str, ScoredResult] = {}
        for item, normalized in self._normalize_scores(vector):
            merged[item.key] = replace(
                item,
                score=normalized * resolved.vector,
                source=ResultSource.VECTOR,
                vector_score=item.score,
                metadata=dict(item.metadata),
            )
        for item, normalized in self._normalize_scores(lexical):
            existing = merged.get(item.key)
            contribution = normalized * resolved.lexical
            if existing is not None:
                existing.score += contribution
                existing.lexical_score = item.score
                existing.source = ResultSource.BOTH
                continue
            merged[item.key] = replace(
                item,
                score=contribution,
                source=ResultSource.LEXICAL,
                lexical_score=item.score,
                metadata=dict(item.metadata),
            )

        results = sorted(merged.values(), key=lambda r: (-r.score, r.key))
        dedupe = self.config.enable_deduplication if enable_deduplication is None else enable_deduplication
        if dedupe:
            results = self._deduplicate(results, self.config.deduplication_threshold)

        floor = self.config.min_score if min_score is None else min_score
        limit = max_results or self.config.max_results
        results = [r for r in results if r.score >= floor][:limit]

        logger.info(
            "Hybrid results merged",
            extra={"lexical": len(lexical), "vector": len(vector), "merged": len(results)},
        )
        return results

    @staticmethod
    def precision_metrics(
        lexical: list[ScoredResult], vector: list[ScoredResult], hybrid: list[ScoredResult]
    ) -> dict[str, float]:
        """Average-score proxy comparing the fused list against each route alone."""

        def _avg(items: list[ScoredResult]) -> float:
            return sum(r.score for r in items) / len(items) if items else 0.0

        lexical_avg, vector_avg, hybrid_avg = _avg(lexical), _avg(vector), _avg(hybrid)
        return {
            "lexical_precision": lexical_avg,
            "vector_precision": vector_avg,
            "hybrid_precision": hybrid_avg,
            "improvement_vs_lexical": ((hybrid_avg - lexical_avg) / lexical_avg) * 100 if lexical_avg else 0.0,
            "improvement_vs_vector": ((hybrid_avg - vector_avg) / vector_avg) * 100 if vector_avg else 0.0,
        }

    def _valid_or_default(self, weights: HybridWeights) -> HybridWeights:
        if weights.is_valid():
            return weights.normalized()
        logger.warning("Invalid hybrid weights, using defaults", extra={"weights": weights.model_dump()})
        default = self.config.default_weights
        return default.normalized() if default.is_valid() else HybridWeights().normalized()

    @staticmethod
    def _normalize_scores(items: list[ScoredResult]) -> list[tuple[ScoredResult, float]]:
        if not items:
            return []
        raw_scores = [item.score for item in items]
        high = max(raw_scores)
        low = min(raw_scores)
        if high == low:
            return [(item, 1.0) for item in items]
        return [(item, (item.score - low) / (high - low)) for item in items]

    @staticmethod
    def _deduplicate(results: list[ScoredResult], threshold: float) -> list[ScoredResult]:
        kept: list[ScoredResult] = []
        for result in results:
            if any(jaccard_similarity(result.content, other.content) >= threshold for other in kept):
                continue
            kept.append(result)
        return kept
