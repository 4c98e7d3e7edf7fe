"""Maximal marginal relevance selection."""

from __future__ import annotations

import logging
from dataclasses import replace

from rag_core.config import DiversityConfig
from rag_core.retrieval.dedup import jaccard_similarity
from rag_core.types import ScoredResult

logger = logging.getLogger(__name__)


class DiversityFilter:
    """Greedy MMR: `lambda * relevance - (1 - lambda) * max_sim(selected)`.

    Similarity is word-set Jaccard over content. The first pick is always the
    most relevant result. `score` keeps the relevance; the MMR value that won
    each pick is stored in `diversity_score`.
    """

    def __init__(self, config: DiversityConfig | None = None) -> None:
        self.config = config or DiversityConfig()

    def select(
        self,
        results: list[ScoredResult],
        *,
        lambda_: float | None = None,
        max_results: int | None = None,
    ) -> list[ScoredResult]:
        if not results:
            return []
        if len(results) == 1:
            return [replace(results[0], diversity_score=1.0)]
        if not self.config.enabled:
            return list(results)

        weight = min(1.0, max(0.0, self.config.lambda_ if lambda_ is None else lambda_))
        limit = max_results or self.config.max_results

        candidates = sorted(results, key=lambda r: -r.score)
        first = candidates.pop(0)
        selected = [replace(first, diversity_score=first.score)]

        while candidates and len(selected) < limit:
            best_index = -1
            best_mmr = float("-inf")
            for i, candidate in enumerate(candidates):
                max_similarity = max(jaccard_similarity(candidate.content, s.content) for s in selected)
                mmr = weight * candidate.score - (1 - weight) * max_similarity
                if mmr > best_mmr:
                    best_mmr = mmr
                    best_index = i
            best = candidates.pop(best_index)
            selected.append(replace(best, diversity_score=best_mmr))

        logger.debug(
            "MMR diversity filtering applied",
            extra={"original": len(results), "selected": len(selected), "lambda": weight},
        )
        return selected

    @staticmethod
    def diversity_metrics(results: list[ScoredResult]) -> dict[str, float]:
        if len(results) <= 1:
            return {
                "average_similarity": 0.0,
                "max_similarity": 0.0,
                "min_similarity": 0.0,
                "diversity_score": 1.0,
            }
        similarities = [
            jaccard_similarity(results[i].content, results[j].content)
            for i in range(len(results))
            for j in range(i + 1, len(results))
        ]
        average = sum(similarities) / len(similarities)
        return {
            "average_similarity": average,
            "max_similarity": max(similarities),
            "min_similarity": min(similarities),
            "diversity_score": 1.0 - average,
        }
