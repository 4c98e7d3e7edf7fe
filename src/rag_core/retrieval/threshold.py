"""Per-query score cutoffs."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from rag_core.config import ThresholdConfig
from rag_core.types import QueryType

logger = logging.getLogger(__name__)

SearchAtThreshold = Callable[[float], Awaitable[Sequence[float]]]

# Checked in this order; the first matching type wins.
_QUERY_PATTERNS: tuple[tuple[QueryType, tuple[re.Pattern[str], ...]], ...] = (
    (
        QueryType.CONCEPTUAL,
        (
            re.compile(r"\b(explain|understand|meaning|concept|theory|idea|definition)\b", re.I),
            re.compile(r"^(what does|what do|what means)\b", re.I),
        ),
    ),
    (
        QueryType.COMPARATIVE,
        (
            re.compile(r"\b(compare|comparison|versus|vs\.?)\b", re.I),
            re.compile(r"^what is the difference\b|\bdifference between\b", re.I),
            re.compile(r"\bwhich is better\b", re.I),
            re.compile(r"\b(better|worse)\b.*\bthan\b", re.I),
        ),
    ),
    (
        QueryType.FACTUAL,
        (
            re.compile(r"^(what|who|when|where|which)\s+(is|are|was|were|did|does|do)\b", re.I),
            re.compile(r"^(how many|how much)\b", re.I),
            re.compile(r"^(who|what|when|where|which)\s+\w+", re.I),
        ),
    ),
    (
        QueryType.PROCEDURAL,
        (
            re.compile(r"^(how to|how do|how can|how should)\b", re.I),
            re.compile(r"\b(steps|process|method|procedure|guide|tutorial|way to)\b", re.I),
        ),
    ),
    (
        QueryType.EXPLORATORY,
        (
            re.compile(r"^(tell me about|learn about|information about|know about|find out about)\b", re.I),
            re.compile(r"\b(overview|introduction|background|general)\b", re.I),
        ),
    ),
)


@dataclass(slots=True)
class ScoreDistribution:
    scores: list[float]
    mean: float = 0.0
    median: float = 0.0
    std_dev: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0
    percentiles: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class ThresholdDecision:
    threshold: float
    strategy: str
    reasoning: str
    query_type: QueryType | None = None
    confidence: float = 1.0
    iterations: int = 0


def classify_query(query: str) -> QueryType:
    text = query.strip()
    for query_type, patterns in _QUERY_PATTERNS:
        if any(pattern.search(text) for pattern in patterns):
            return query_type
    return QueryType.UNKNOWN


def analyze_distribution(scores: Sequence[float]) -> ScoreDistribution:
    if not scores:
        return ScoreDistribution(
            scores=[], percentiles={"p25": 0.0, "p50": 0.0, "p75": 0.0, "p90": 0.0, "p95": 0.0}
        )
    ordered = sorted(scores)
    n = len(ordered)
    mean = sum(ordered) / n
    variance = sum((s - mean) ** 2 for s in ordered) / n

    def _at(p: float) -> float:
        return ordered[min(math.floor(n * p), n - 1)]

    median = ordered[n // 2]
    return ScoreDistribution(
        scores=ordered,
        mean=mean,
        median=median,
        std_dev=math.sqrt(variance),
        minimum=ordered[0],
        maximum=ordered[-1],
        percentiles={"p25": _at(0.25), "p50": median, "p75": _at(0.75), "p90": _at(0.90), "p95": _at(0.95)},
    )


class ThresholdOptimizer:
    """Chooses the similarity cutoff for a query.

    Precedence: disabled gives the fixed default; otherwise the query type
    picks a starting threshold, prior scores (when given) replace it with a
    percentile of their distribution, and finally the count of prior scores
    that would pass is pulled back into `[min_results, max_results]` by one
    fallback step. Every result is clamped to `[min_threshold, max_threshold]`.
    """

    def __init__(self, config: ThresholdConfig | None = None) -> None:
        self.config = config or ThresholdConfig()

    def calculate_threshold(
        self,
        query: str,
        prior_scores: Sequence[float] | None = None,
        *,
        min_results: int | None = None,
        max_results: int | None = None,
    ) -> ThresholdDecision:
        cfg = self.config
        low_count = cfg.min_results if min_results is None else min_results
        high_count = cfg.max_results if max_results is None else max_results

        if not cfg.adaptive_enabled:
            return ThresholdDecision(
                threshold=cfg.default_threshold,
                strategy="default",
                reasoning="Adaptive thresholds disabled, using default",
            )

        query_type = classify_query(query)
        threshold = cfg.query_type_thresholds.get(query_type, cfg.default_threshold)
        decision = ThresholdDecision(
            threshold=threshold,
            strategy="query-type",
            reasoning=f"Query type: {query_type.value}, using type-specific threshold",
            query_type=query_type,
            confidence=0.7,
        )

        if prior_scores and cfg.use_distribution_analysis:
            distribution = analyze_distribution(prior_scores)
            decision.threshold = self._from_distribution(distribution)
            decision.strategy = "distribution"
            decision.confidence = 0.8
            decision.reasoning = (
                f"Distribution-based threshold (mean: {distribution.mean:.3f}, "
                f"p75: {distribution.percentiles['p75']:.3f})"
            )

        if cfg.fallback_enabled and prior_scores is not None:
            passing = sum(1 for score in prior_scores if score >= decision.threshold)
            original = decision.threshold
            if passing < low_count and original > cfg.min_threshold:
                decision.threshold = max(cfg.min_threshold, original - cfg.lower_step)
                decision.strategy = "fallback"
                decision.confidence = 0.6
                decision.reasoning = (
                    f"Fallback: lowered threshold from {original:.3f} to {decision.threshold:.3f} "
                    f"(had {passing}, need {low_count})"
                )
            elif passing > high_count and original < cfg.max_threshold:
                decision.threshold = min(cfg.max_threshold, original + cfg.raise_step)
                decision.strategy = "fallback"
                decision.confidence = 0.6
                decision.reasoning = (
                    f"Fallback: raised threshold from {original:.3f} to {decision.threshold:.3f} "
                    f"(had {passing}, want at most {high_count})"
                )

        decision.threshold = self._clamp(decision.threshold)
        logger.debug(
            "Threshold calculated",
            extra={"threshold": decision.threshold, "strategy": decision.strategy, "query_type": query_type.value},
        )
        return decision

    def get_threshold(self, query: str, prior_scores: Sequence[float] | None = None) -> float:
        return self.calculate_threshold(query, prior_scores).threshold

    async def optimize_threshold(
        self,
        query: str,
        search_fn: SearchAtThreshold,
        *,
        min_results: int | None = None,
        max_results: int | None = None,
        max_iterations: int | None = None,
    ) -> ThresholdDecision:
        """Re-runs `search_fn` with stepped thresholds until the count is in band.

        `search_fn(threshold)` returns the scores that passed. When the band is
        never reached, the threshold whose count landed closest to it wins.
        """

        cfg = self.config
        low_count = cfg.min_results if min_results is None else min_results
        high_count = cfg.max_results if max_results is None else max_results
        iterations = cfg.max_iterations if max_iterations is None else max_iterations

        query_type = classify_query(query)
        threshold = self._clamp(cfg.query_type_thresholds.get(query_type, cfg.default_threshold))
        best_threshold = threshold
        best_distance: int | None = None
        best_count = 0

        for iteration in range(iterations):
            count = len(await search_fn(threshold))
            logger.debug(
                "Threshold optimization iteration",
                extra={"iteration": iteration, "threshold": threshold, "count": count},
            )
            if low_count <= count <= high_count:
                return ThresholdDecision(
                    threshold=threshold,
                    strategy="adaptive",
                    reasoning=f"Optimized threshold after {iteration + 1} iterations",
                    query_type=query_type,
                    confidence=0.9,
                    iterations=iteration + 1,
                )

            distance = low_count - count if count < low_count else count - high_count
            if best_distance is None or distance < best_distance:
                best_distance = distance
                best_threshold = threshold
                best_count = count

            if count < low_count:
                stepped = max(cfg.min_threshold, threshold - cfg.iteration_step)
            else:
                stepped = min(cfg.max_threshold, threshold + cfg.iteration_step)
            if stepped == threshold:
                break
            threshold = stepped

        return ThresholdDecision(
            threshold=best_threshold,
            strategy="adaptive",
            reasoning=f"Best threshold after {iterations} iterations ({best_count} results)",
            query_type=query_type,
            confidence=0.7,
            iterations=iterations,
        )

    def _from_distribution(self, distribution: ScoreDistribution) -> float:
        cfg = self.config
        if not distribution.scores:
            return cfg.default_threshold
        n = len(distribution.scores)
        threshold = distribution.scores[min(math.floor(n * cfg.percentile), n - 1)]
        threshold = self._clamp(threshold)
        # tight clusters of good scores keep everything near the mean
        if distribution.std_dev < 0.1 and distribution.mean > 0.5:
            threshold = max(threshold, distribution.mean - 0.1)
        return threshold

    def _clamp(self, value: float) -> float:
        return max(self.config.min_threshold, min(self.config.max_threshold, value))
