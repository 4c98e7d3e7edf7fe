import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from rag_core.config import DomainAuthorityConfig, RerankingConfig
from rag_core.errors import ValidationError
from rag_core.retrieval.authority import DomainAuthorityScorer, extract_domain
from rag_core.retrieval.rerank import Reranker
from rag_core.types import RerankStrategy, ResultSource, ScoredResult, WebSearchResult

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _reranker(**kwargs: object) -> Reranker:
    return Reranker(RerankingConfig(**kwargs), now=lambda: NOW)


def _days_ago(days: int) -> str:
    return (NOW - timedelta(days=days)).isoformat()


def test_extract_domain() -> None:
    assert extract_domain("https://www.Nature.com/articles/1") == "nature.com"
    assert extract_domain("http://docs.python.org") == "docs.python.org"
    assert extract_domain("") == ""


def test_authority_lookup_order() -> None:
    scorer = DomainAuthorityScorer()

    assert scorer.score("https://nature.com/x").source == "exact"
    assert scorer.score("https://en.wikipedia.org/wiki/BM25").matched == "en.wikipedia.org"
    assert scorer.score("https://cs.stanford.edu").source == "pattern"
    assert scorer.score("https://example.org").source == "tld"
    neutral = scorer.score("https://random-blog.io")
    assert (neutral.source, neutral.score) == ("default", 0.5)


def test_tier_weights_scale_raw_scores() -> None:
    scorer = DomainAuthorityScorer()

    assert scorer.score("https://github.com").score == pytest.approx(0.80 * 0.95)
    assert scorer.score("https://medium.com").score == pytest.approx(0.60 * 0.85)


def test_custom_scores_and_boosting() -> None:
    scorer = DomainAuthorityScorer(DomainAuthorityConfig(custom_domain_scores={"intranet.local": 99}))

    assert scorer.score("https://intranet.local/page").score == pytest.approx(0.99)
    boosted, _ = scorer.score_with_authority("https://nature.com", 0.5)
    assert boosted == pytest.approx(0.6)
    assert scorer.is_authoritative("https://nih.gov")
    assert not scorer.is_authoritative("https://random-blog.io")


def test_sort_and_statistics() -> None:
    scorer = DomainAuthorityScorer()
    results = [
        WebSearchResult(title="blog", url="https://random-blog.io", content="x"),
        WebSearchResult(title="paper", url="https://nature.com/a", content="x"),
    ]

    assert [r.title for r in scorer.sort_by_authority(results)] == ["paper", "blog"]
    stats = scorer.statistics(results)
    assert stats["tier1_count"] == 1
    assert stats["default_count"] == 1


def test_relevance_counts_keywords_in_title_and_body() -> None:
    reranker = _reranker()

    full = reranker.relevance_score("vector search", "Vector Search Guide", "about vector search")
    partial = reranker.relevance_score("vector search", "Intro", "vector only")
    no_keywords = reranker.relevance_score("a is", "anything", "anything")

    assert full == 1.0
    assert partial == pytest.approx(0.5 * 0.4)
    assert no_keywords == 0.5


def test_trusted_domains_match_exactly_or_by_suffix() -> None:
    reranker = _reranker()

    assert reranker.domain_authority_score("https://en.wikipedia.org/x") == 1.0
    assert reranker.domain_authority_score("https://mit.edu") == 1.0
    assert reranker.domain_authority_score("https://notwikipedia.org") < 1.0
    assert reranker.domain_authority_score("") == 0.5


def test_freshness_curve() -> None:
    reranker = _reranker()

    assert reranker.freshness_score(_days_ago(3)) == pytest.approx(1.3)
    assert reranker.freshness_score(_days_ago(20)) == pytest.approx(0.9 * 1.3)
    assert reranker.freshness_score(_days_ago(200)) == 1.0
    assert reranker.freshness_score(_days_ago(365 + 73)) == pytest.approx(0.8)
    assert reranker.freshness_score(_days_ago(5000)) == 0.3
    assert reranker.freshness_score((NOW + timedelta(days=2)).isoformat()) == 0.3
    assert reranker.freshness_score("not a date") == 0.5
    assert reranker.freshness_score(None) == 0.5


def test_freshness_steps_up_after_half_a_year() -> None:
    reranker = _reranker()

    half_year = reranker.freshness_score(_days_ago(180))
    older = reranker.freshness_score(_days_ago(181))

    assert half_year == pytest.approx(0.7 * 1.3)
    assert older == 1.0
    assert half_year < older


def test_score_based_ordering_and_rank_changes() -> None:
    reranker = _reranker()
    results = [
        WebSearchResult(title="Cooking tips", url="https://random-blog.io/a", content="pasta", score=0.9),
        WebSearchResult(
            title="BM25 ranking explained",
            url="https://en.wikipedia.org/wiki/Okapi_BM25",
            content="bm25 ranking function",
            score=0.6,
            published_date=_days_ago(10),
        ),
    ]

    reranked = asyncio.run(reranker.rerank("bm25 ranking", results))

    assert [r.item.title for r in reranked] == ["BM25 ranking explained", "Cooking tips"]
    assert [r.rank_change for r in reranked] == [1, -1]
    assert reranked[0].reranked_score > reranked[1].reranked_score


def test_document_results_use_metadata_for_factors() -> None:
    reranker = _reranker()
    doc = ScoredResult(
        document_id="d1",
        chunk_index=0,
        content="retention policy",
        score=0.7,
        source=ResultSource.BOTH,
        metadata={"title": "Retention", "url": "https://nih.gov/policy"},
    )

    [reranked] = asyncio.run(reranker.rerank("retention policy", [doc]))

    assert reranked.domain_authority_score == 1.0
    assert reranked.original_score == 0.7


def test_none_strategy_keeps_order() -> None:
    results = [
        WebSearchResult(title="b", url="https://b.io", content="x", score=0.2),
        WebSearchResult(title="a", url="https://a.io", content="x", score=0.9),
    ]

    reranked = asyncio.run(_reranker().rerank("x", results, strategy=RerankStrategy.NONE))

    assert [r.item.title for r in reranked] == ["b", "a"]
    assert [r.reranked_score for r in reranked] == [0.2, 0.9]


def test_cross_encoder_uses_pair_scorer() -> None:
    async def pair_scorer(query: str, passages: list[str]) -> list[float]:
        return [0.1 if "noise" in passage else 0.95 for passage in passages]

    reranker = Reranker(RerankingConfig(strategy=RerankStrategy.CROSS_ENCODER), pair_scorer=pair_scorer)
    results = [
        WebSearchResult(title="n", url="https://n.io", content="noise", score=0.9),
        WebSearchResult(title="s", url="https://s.io", content="signal", score=0.1),
    ]

    reranked = asyncio.run(reranker.rerank("q", results))

    assert [r.item.title for r in reranked] == ["s", "n"]
    assert reranked[0].relevance_score == 0.95


def test_cross_encoder_without_scorer_is_rejected() -> None:
    reranker = _reranker(strategy=RerankStrategy.CROSS_ENCODER)
    results = [WebSearchResult(title="t", url="https://t.io", content="c")]

    with pytest.raises(ValidationError):
        asyncio.run(reranker.rerank("q", results))
