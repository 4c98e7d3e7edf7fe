import asyncio

import pytest

from rag_core.config import ThresholdConfig
from rag_core.retrieval.threshold import ThresholdOptimizer, analyze_distribution, classify_query
from rag_core.types import QueryType


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("Explain vector search", QueryType.CONCEPTUAL),
        ("Compare BM25 versus TF-IDF", QueryType.COMPARATIVE),
        ("What is the difference between lists and tuples", QueryType.COMPARATIVE),
        ("What is the capital of France", QueryType.FACTUAL),
        ("How to rotate encryption keys", QueryType.PROCEDURAL),
        ("Tell me about kubernetes", QueryType.EXPLORATORY),
        ("kubernetes", QueryType.UNKNOWN),
    ],
)
def test_classify_query(query: str, expected: QueryType) -> None:
    assert classify_query(query) is expected


def test_analyze_distribution() -> None:
    stats = analyze_distribution([0.2, 0.4, 0.6, 0.8])

    assert stats.mean == pytest.approx(0.5)
    assert stats.minimum == 0.2
    assert stats.maximum == 0.8
    assert stats.median == 0.6
    assert analyze_distribution([]).percentiles["p90"] == 0.0


def test_disabled_uses_default() -> None:
    decision = ThresholdOptimizer(ThresholdConfig(adaptive_enabled=False)).calculate_threshold("What is BM25")

    assert decision.threshold == 0.7
    assert decision.strategy == "default"


def test_query_type_threshold_without_prior_scores() -> None:
    decision = ThresholdOptimizer().calculate_threshold("What is BM25")

    assert decision.threshold == 0.75
    assert decision.strategy == "query-type"
    assert decision.query_type is QueryType.FACTUAL


def test_distribution_percentile_replaces_query_type() -> None:
    scores = [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0]

    decision = ThresholdOptimizer().calculate_threshold("kubernetes", scores)

    assert decision.threshold == 0.8
    assert decision.strategy == "distribution"


def test_fallback_lowers_when_too_few_pass() -> None:
    decision = ThresholdOptimizer().calculate_threshold("kubernetes", [0.9, 0.2, 0.1])

    assert decision.threshold == pytest.approx(0.8)
    assert decision.strategy == "fallback"


def test_fallback_raises_when_too_many_pass() -> None:
    decision = ThresholdOptimizer().calculate_threshold("kubernetes", [0.6] * 20)

    assert decision.threshold == pytest.approx(0.65)
    assert decision.strategy == "fallback"


def test_threshold_never_leaves_band() -> None:
    decision = ThresholdOptimizer().calculate_threshold("kubernetes", [0.1] * 5)

    assert decision.threshold == 0.3


def test_optimize_steps_until_count_in_band() -> None:
    pool = [0.9, 0.8, 0.66, 0.62, 0.5]
    seen: list[float] = []

    async def search(threshold: float) -> list[float]:
        seen.append(threshold)
        return [score for score in pool if score >= threshold]

    decision = asyncio.run(ThresholdOptimizer().optimize_threshold("kubernetes", search))

    assert decision.threshold == pytest.approx(0.65)
    assert decision.iterations == 2
    assert seen[0] == 0.7


def test_optimize_returns_closest_when_band_unreachable() -> None:
    async def search(threshold: float) -> list[float]:
        return []

    decision = asyncio.run(ThresholdOptimizer().optimize_threshold("kubernetes", search))

    assert decision.threshold == 0.7
    assert decision.iterations == 5
    assert decision.confidence == 0.7
