import asyncio

import pytest

from rag_core.config import ChunkingConfig, TokenCounterConfig
from rag_core.errors import ChunkingError
from rag_core.ingest.chunker import AdaptiveChunker, ChunkSource, SentenceChunker
from rag_core.ingest.embedder import Embedder
from rag_core.tokens.counter import WORD_ENCODING, TokenCounter
from rag_core.types import ChunkingStrategy, DocumentType

SENTENCE = "Data governance requires strict access control and encryption."  # 9 word tokens


class KeywordEmbedder(Embedder):
    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [[1.0, 0.0] if "cat" in text.lower() else [0.0, 1.0] for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return (await self.embed_documents([text]))[0]


class BrokenEmbedder(Embedder):
    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("embedding backend offline")

    async def embed_query(self, text: str) -> list[float]:
        raise RuntimeError("embedding backend offline")


def _counter() -> TokenCounter:
    return TokenCounter(TokenCounterConfig(default_encoding=WORD_ENCODING))


def _config(**overrides: object) -> ChunkingConfig:
    values: dict[str, object] = {"max_tokens": 50, "min_tokens": 10, "overlap_tokens": 10}
    values.update(overrides)
    return ChunkingConfig(**values)


def _paragraphs(count: int, sentences: int = 4) -> str:
    return "\n\n".join(" ".join([SENTENCE] * sentences) for _ in range(count))


def _source() -> ChunkSource:
    return ChunkSource(document_id="doc-1", user_id="user-1", topic_id="topic-1", metadata={"source": "unit"})


def test_chunks_stay_within_tolerance_and_cover_text() -> None:
    config = _config()
    chunker = SentenceChunker(_counter(), config)
    text = _paragraphs(6)

    chunks = chunker.chunk(text, _source())

    assert len(chunks) >= 3
    hard_cap = config.max_tokens * (1 + config.overflow_tolerance)
    assert all(chunk.token_count <= hard_cap for chunk in chunks)
    assert all(chunk.content == text[chunk.start_char : chunk.end_char] for chunk in chunks)
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    assert all(chunk.user_id == "user-1" and chunk.topic_id == "topic-1" for chunk in chunks)
    assert chunks[0].metadata["source"] == "unit"

    for position, char in enumerate(text):
        if not char.isspace():
            assert any(c.start_char <= position < c.end_char for c in chunks)


def test_overlap_repeats_whole_trailing_sentences() -> None:
    chunker = SentenceChunker(_counter(), _config())
    text = _paragraphs(3)

    chunks = chunker.chunk(text, _source())

    second = chunks[1]
    assert second.overlap_chars > 0
    assert second.start_char < chunks[0].end_char
    assert second.content[: second.overlap_chars].strip() == SENTENCE


def test_short_text_is_a_single_chunk() -> None:
    chunker = SentenceChunker(_counter(), _config())

    chunks = chunker.chunk("  " + SENTENCE + "  ", _source())

    assert len(chunks) == 1
    assert chunks[0].content == SENTENCE
    assert chunks[0].token_count == 9
    assert chunker.chunk("   ", _source()) == []


def test_oversized_sentence_is_split_into_windows() -> None:
    config = _config()
    chunker = SentenceChunker(_counter(), config)
    text = " ".join(["word"] * 130)

    chunks = chunker.chunk(text, _source())

    assert len(chunks) >= 3
    assert all(chunk.token_count <= config.max_tokens * (1 + config.overflow_tolerance) for chunk in chunks)
    assert chunks[-1].end_char == len(text)


def test_sections_are_not_mixed_and_carry_no_overlap() -> None:
    chunker = SentenceChunker(_counter(), _config())
    text = "# Alpha\n" + " ".join([SENTENCE] * 4) + "\n\n# Beta\n" + " ".join([SENTENCE] * 4)

    chunks = chunker.chunk(text, _source())

    assert [chunk.section.title for chunk in chunks if chunk.section] == ["Alpha", "Beta"]
    assert chunks[1].overlap_chars == 0
    assert "# Beta" not in chunks[0].content


def test_semantic_strategy_breaks_on_topic_change() -> None:
    chunker = AdaptiveChunker(_counter(), _config(), KeywordEmbedder())
    cats = " ".join(["The cat sleeps on the warm windowsill today."] * 4)
    taxes = " ".join(["Quarterly filings are due before the deadline."] * 4)

    chunks = asyncio.run(chunker.chunk(cats + " " + taxes, _source(), strategy=ChunkingStrategy.SEMANTIC))

    assert len(chunks) >= 2
    assert "Quarterly" not in chunks[0].content
    assert all(chunk.metadata["strategy"] == "semantic" for chunk in chunks)


def test_semantic_failure_falls_back_to_sentences() -> None:
    chunker = AdaptiveChunker(_counter(), _config(), BrokenEmbedder())

    chunks = asyncio.run(chunker.chunk(_paragraphs(3), _source(), strategy=ChunkingStrategy.SEMANTIC))

    assert chunks
    assert all("strategy" not in chunk.metadata for chunk in chunks)


def test_semantic_failure_raises_when_fallback_disabled() -> None:
    config = _config()
    config.semantic.fallback_to_sentence = False
    chunker = AdaptiveChunker(_counter(), config, BrokenEmbedder())

    with pytest.raises(ChunkingError):
        asyncio.run(chunker.chunk(_paragraphs(3), _source(), strategy=ChunkingStrategy.SEMANTIC))


def test_hybrid_uses_sentences_for_short_documents() -> None:
    chunker = AdaptiveChunker(_counter(), _config(), BrokenEmbedder())

    chunks = asyncio.run(chunker.chunk(SENTENCE, _source(), strategy=ChunkingStrategy.HYBRID))

    assert len(chunks) == 1


def test_document_type_selects_profile_sizes() -> None:
    chunker = AdaptiveChunker(_counter(), _config())
    text = _paragraphs(40)

    chunks = asyncio.run(chunker.chunk(text, _source(), document_type=DocumentType.CODE))

    assert max(chunk.token_count for chunk in chunks) > 50
    assert all(chunk.token_count <= 600 * 1.15 for chunk in chunks)
    assert chunks[0].metadata["document_type"] == "code"


def test_compare_strategies_reports_every_strategy() -> None:
    chunker = AdaptiveChunker(_counter(), _config(), KeywordEmbedder())

    report = asyncio.run(chunker.compare_strategies(_paragraphs(4)))

    assert set(report) == {"sentence", "semantic", "hybrid"}
    assert all(entry["chunk_count"] >= 1 for entry in report.values())
