from rag_core.config import DeduplicationConfig
from rag_core.retrieval.dedup import (
    Deduplicator,
    character_similarity,
    content_similarity,
    jaccard_similarity,
)
from rag_core.types import ResultSource, ScoredResult, WebSearchResult


def _result(key: str, content: str, score: float) -> ScoredResult:
    return ScoredResult(document_id=key, chunk_index=0, content=content, score=score, source=ResultSource.BOTH)


def test_similarity_measures() -> None:
    assert jaccard_similarity("a b c", "b c d") == 0.5
    assert jaccard_similarity("", "") == 1.0
    assert jaccard_similarity("a", "") == 0.0
    assert character_similarity("abcd", "abxd") == 0.75
    assert character_similarity("Same", "same ") == 1.0


def test_content_similarity_skips_character_pass_when_words_disagree() -> None:
    # word overlap is zero, so even a perfect character score could not reach 0.9
    assert content_similarity("aaaa bbbb", "cccc dddd", threshold=0.9) == 0.0
    assert content_similarity("aaaa bbbb", "cccc dddd", fuzzy=False) == 0.0


def test_exact_duplicates_keep_highest_score_in_place() -> None:
    results = [
        _result("a", "Encrypt data at rest.", 0.4),
        _result("b", "Rotate keys yearly.", 0.5),
        _result("c", "ENCRYPT DATA AT REST.", 0.9),
    ]

    kept, stats = Deduplicator().deduplicate(results)

    assert [r.document_id for r in kept] == ["c", "b"]
    assert stats.exact_duplicates_removed == 1
    assert stats.deduplicated_count == 2
    assert stats.total_removed == 1


def test_similar_results_are_collapsed() -> None:
    results = [
        _result("a", "the quarterly revenue report shows strong growth in europe", 0.8),
        _result("b", "the quarterly revenue report shows strong growth in europe today", 0.6),
        _result("c", "office parking rules changed last week", 0.5),
    ]

    kept, stats = Deduplicator().deduplicate(results)

    assert [r.document_id for r in kept] == ["a", "c"]
    assert stats.near_duplicates_removed + stats.similarity_duplicates_removed == 1


def test_disabled_or_single_input_is_untouched() -> None:
    results = [_result("a", "same", 1.0), _result("b", "same", 0.5)]

    kept, stats = Deduplicator(DeduplicationConfig(enabled=False)).deduplicate(results)
    assert kept == results
    assert stats.total_removed == 0

    single, _ = Deduplicator().deduplicate(results[:1])
    assert single == results[:1]


def test_web_results_deduplicate_by_content() -> None:
    web = [
        WebSearchResult(title="A", url="https://a.example/x", content="identical body text", score=0.3),
        WebSearchResult(title="B", url="https://b.example/y", content="identical body text", score=0.7),
    ]

    kept, _ = Deduplicator().deduplicate(web)

    assert [r.url for r in kept] == ["https://b.example/y"]


def test_quick_deduplicate_uses_hash_only() -> None:
    results = [_result("a", "Same text", 0.2), _result("b", "same   text", 0.6), _result("c", "other", 0.1)]

    kept = Deduplicator().quick_deduplicate(results)

    assert [r.document_id for r in kept] == ["b", "c"]
