import asyncio

import pytest

from rag_core.config import ChunkingConfig, TokenCounterConfig
from rag_core.ingest.chunker import AdaptiveChunker, ChunkSource
from rag_core.tokens.counter import WORD_ENCODING, TokenCounter
from rag_core.types import DocumentType

MARKDOWN = "\n\n".join(
    f"## Section {n}\n\n" + " ".join(f"Point {n}.{i} covers retention and audit trails." for i in range(12))
    for n in range(4)
)
PROSE = " ".join(f"Sentence {i} explains why the index must stay consistent." for i in range(120))
CODE = "\n\n".join(f"def handler_{i}(event):\n    return process(event, retries={i})" for i in range(40))


@pytest.mark.parametrize(
    ("text", "document_type"),
    [(MARKDOWN, DocumentType.MARKDOWN), (PROSE, DocumentType.TEXT), (CODE, DocumentType.CODE)],
)
def test_chunks_cover_text_and_respect_size(text: str, document_type: DocumentType) -> None:
    config = ChunkingConfig(max_tokens=60, min_tokens=10, overlap_tokens=8)
    config.adaptive.enabled = False
    chunker = AdaptiveChunker(TokenCounter(TokenCounterConfig(default_encoding=WORD_ENCODING)), config)

    chunks = asyncio.run(chunker.chunk(text, ChunkSource(document_id="doc", user_id="u1"), document_type=document_type))

    assert chunks
    hard_cap = config.max_tokens * (1 + config.overflow_tolerance)
    for chunk in chunks:
        assert chunk.content == text[chunk.start_char : chunk.end_char]
        assert 0 < chunk.token_count <= hard_cap
        assert chunk.document_id == "doc" and chunk.user_id == "u1"
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    assert len({chunk.id for chunk in chunks}) == len(chunks)

    covered = [False] * len(text)
    for chunk in chunks:
        for position in range(chunk.start_char, chunk.end_char):
            covered[position] = True
    assert all(covered[i] for i, char in enumerate(text) if not char.isspace())


def test_size_contract_on_long_repetitive_text() -> None:
    config = ChunkingConfig(max_tokens=100, min_tokens=20, overlap_tokens=10)
    config.adaptive.enabled = False
    chunker = AdaptiveChunker(TokenCounter(TokenCounterConfig(default_encoding=WORD_ENCODING)), config)
    text = "\n\n".join(" ".join(["The archive keeps every signed contract for seven years."] * 6) for _ in range(30))

    chunks = asyncio.run(chunker.chunk(text, ChunkSource(document_id="doc")))

    within = sum(1 for chunk in chunks if chunk.token_count <= 115)
    assert within / len(chunks) >= 0.95


def test_text_below_minimum_yields_one_chunk() -> None:
    chunker = AdaptiveChunker(TokenCounter(TokenCounterConfig(default_encoding=WORD_ENCODING)))

    chunks = asyncio.run(chunker.chunk("Short note.", ChunkSource(document_id="doc")))

    assert len(chunks) == 1
    assert chunks[0].content == "Short note."
    assert asyncio.run(chunker.chunk("   \n ", ChunkSource(document_id="doc"))) == []
