import math

import pytest

from rag_core.errors import IndexStateError, ValidationError
from rag_core.retrieval.bm25 import BM25Index, IndexRegistry, tokenize
from rag_core.retrieval.chunk_store import InMemoryChunkStore
from rag_core.types import Chunk, IndexedDocument


def _doc(
    doc_id: str,
    content: str,
    *,
    user_id: str = "u1",
    document_id: str = "d1",
    topic_id: str | None = None,
) -> IndexedDocument:
    return IndexedDocument(
        id=doc_id, document_id=document_id, user_id=user_id, content=content, topic_id=topic_id
    )


def _chunk(document_id: str, index: int, content: str, user_id: str = "u1") -> Chunk:
    return Chunk(
        id=f"{document_id}-chunk-{index:04d}",
        document_id=document_id,
        user_id=user_id,
        chunk_index=index,
        content=content,
        start_char=0,
        end_char=len(content),
        token_count=len(content.split()),
    )


def test_tokenize_lowercases_and_splits_on_symbols() -> None:
    assert tokenize("Hello, World! BM25-index") == ["hello", "world", "bm25", "index"]


def test_idf_stays_positive_for_common_terms() -> None:
    index = BM25Index()
    index.add_many([_doc("a", "shared alpha"), _doc("b", "shared beta")])

    assert index.idf("shared") == pytest.approx(math.log(1 + 0.5 / 2.5))
    assert index.idf("shared") > 0
    assert index.idf("alpha") > index.idf("shared")


def test_search_ranks_by_term_frequency_and_rarity() -> None:
    index = BM25Index()
    index.add_many(
        [
            _doc("a", "encryption encryption policy"),
            _doc("b", "encryption policy overview"),
            _doc("c", "holiday schedule"),
        ]
    )

    hits = index.search("encryption", user_id="u1")

    assert [hit.document.id for hit in hits] == ["a", "b"]
    assert hits[0].score > hits[1].score > 0


def test_search_is_scoped_by_tenant_topic_and_document() -> None:
    index = BM25Index()
    index.add_many(
        [
            _doc("a", "quarterly report", user_id="u1", document_id="d1", topic_id="finance"),
            _doc("b", "quarterly report", user_id="u2", document_id="d2", topic_id="finance"),
            _doc("c", "quarterly report", user_id="u1", document_id="d3", topic_id="ops"),
        ]
    )

    assert {h.document.id for h in index.search("quarterly", user_id="u1")} == {"a", "c"}
    assert [h.document.id for h in index.search("quarterly", user_id="u1", topic_id="finance")] == ["a"]
    assert [h.document.id for h in index.search("quarterly", user_id="u1", document_ids=["d3"])] == ["c"]
    with pytest.raises(ValidationError):
        index.search("quarterly", user_id="")


def test_empty_content_and_empty_query_are_ignored() -> None:
    index = BM25Index()
    index.add(_doc("a", "   "))

    assert len(index) == 0
    assert index.search("?!", user_id="u1") == []


def test_remove_keeps_index_consistent() -> None:
    index = BM25Index()
    index.add_many([_doc("a", "alpha beta", document_id="d1"), _doc("b", "beta gamma", document_id="d2")])

    assert index.remove("a")
    assert not index.remove("a")
    index.check_consistency()
    assert [h.document.id for h in index.search("beta", user_id="u1")] == ["b"]
    assert index.stats()["terms"] == 2

    assert index.remove_document_chunks("d2") == 1
    assert index.stats()["documents"] == 0


def test_readding_an_id_replaces_the_entry() -> None:
    index = BM25Index()
    index.add(_doc("a", "old words"))
    index.add(_doc("a", "new words"))

    assert len(index) == 1
    assert index.search("old", user_id="u1") == []
    assert index.stats()["average_length"] == 2.0


def test_corrupted_postings_are_detected() -> None:
    index = BM25Index()
    index.add(_doc("a", "alpha"))
    index._postings["alpha"].add("ghost")

    with pytest.raises(IndexStateError):
        index.check_consistency()
    with pytest.raises(IndexStateError):
        index.search("alpha", user_id="u1")


def test_registry_shards_per_user_and_rebuilds_inconsistent_shard() -> None:
    store = InMemoryChunkStore()
    chunks = [_chunk("d1", 0, "vector databases store embeddings"), _chunk("d2", 0, "lexical search", "u2")]
    store.put_many(chunks)
    registry = IndexRegistry(chunk_store=store)

    assert registry.add_chunks(chunks) == 2
    assert registry.stats()["shards"] == 2
    assert registry.search("lexical", user_id="u1") == []

    registry.shard("u1")._postings["vector"].add("ghost")
    hits = registry.search("vector", user_id="u1")

    assert [h.document.document_id for h in hits] == ["d1"]
    registry.shard("u1").check_consistency()
    assert registry.remove_document("u1", "d1") == 1
