"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ResultSource(str, Enum):
    LEXICAL = "lexical"
    VECTOR = "vector"
    BOTH = "both"
    WEB = "web"


class DocumentType(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    TEXT = "text"
    CODE = "code"
    MARKDOWN = "markdown"
    HTML = "html"
    UNKNOWN = "unknown"


class ChunkingStrategy(str, Enum):
    SENTENCE = "sentence"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class OverlapMode(str, Enum):
    FIXED = "fixed"
    RATIO = "ratio"
    DYNAMIC = "dynamic"


class RerankStrategy(str, Enum):
    SCORE_BASED = "score-based"
    CROSS_ENCODER = "cross-encoder"
    NONE = "none"


class QueryType(str, Enum):
    FACTUAL = "factual"
    CONCEPTUAL = "conceptual"
    PROCEDURAL = "procedural"
    EXPLORATORY = "exploratory"
    COMPARATIVE = "comparative"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class SectionRef:
    """Heading a chunk starts under."""

    title: str
    level: int
    index: int


@dataclass(slots=True)
class Paragraph:
    index: int
    start_char: int
    end_char: int
    section_index: int | None = None


@dataclass(slots=True)
class Section:
    index: int
    title: str
    level: int
    start_char: int
    end_char: int
    kind: str = "markdown"

    def ref(self) -> SectionRef:
        return SectionRef(title=self.title, level=self.level, index=self.index)


@dataclass(slots=True)
class DocumentStructure:
    paragraphs: list[Paragraph]
    sections: list[Section]

    @property
    def has_paragraphs(self) -> bool:
        return len(self.paragraphs) > 1

    @property
    def has_sections(self) -> bool:
        return bool(self.sections)


@dataclass(slots=True)
class Chunk:
    """A token-bounded passage of a source document.

    `content` is always the exact source slice `text[start_char:end_char]`.
    `overlap_chars` is the length of the prefix repeated from the previous
    chunk, so dropping it from every chunk reconstructs the document.
    """

    id: str
    document_id: str
    user_id: str
    chunk_index: int
    content: str
    start_char: int
    end_char: int
    token_count: int
    topic_id: str | None = None
    paragraph_indices: list[int] = field(default_factory=list)
    section: SectionRef | None = None
    overlap_chars: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class IndexedDocument:
    """Projection of a chunk into the lexical index."""

    id: str
    document_id: str
    user_id: str
    content: str
    topic_id: str | None = None
    chunk_index: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> "IndexedDocument":
        return cls(
            id=chunk.id,
            document_id=chunk.document_id,
            user_id=chunk.user_id,
            content=chunk.content,
            topic_id=chunk.topic_id,
            chunk_index=chunk.chunk_index,
            metadata=dict(chunk.metadata),
        )


@dataclass(slots=True)
class ScoredResult:
    """A retrieval candidate flowing between ranking stages.

    `score` changes meaning per stage (raw BM25 or cosine, fused, diversity
    adjusted, reranked); the component scores keep the raw inputs.
    """

    document_id: str
    chunk_index: int
    content: str
    score: float
    source: ResultSource
    metadata: dict[str, Any] = field(default_factory=dict)
    lexical_score: float | None = None
    vector_score: float | None = None
    diversity_score: float | None = None

    @property
    def key(self) -> str:
        return f"{self.document_id}:{self.chunk_index}"

    @property
    def title(self) -> str:
        return str(self.metadata.get("title") or self.metadata.get("document_name") or "")

    @property
    def url(self) -> str:
        return str(self.metadata.get("url") or "")

    @property
    def published_date(self) -> str | None:
        value = self.metadata.get("published_date")
        return str(value) if value else None


@dataclass(slots=True)
class WebSearchResult:
    title: str
    url: str
    content: str
    score: float = 0.5
    published_date: str | None = None


@dataclass(slots=True)
class RerankedResult:
    """Reranker output keeping the factor breakdown for diagnostics."""

    item: ScoredResult | WebSearchResult
    relevance_score: float
    domain_authority_score: float
    freshness_score: float
    original_score: float
    reranked_score: float
    original_rank: int
    rank_change: int = 0
