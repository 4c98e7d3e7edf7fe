"""Boundary-aware sentence chunking with an embedding-grouped variant."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from rag_core.config import ChunkingConfig
from rag_core.errors import ChunkingError
from rag_core.ingest.boundaries import BoundaryDetector
from rag_core.ingest.embedder import Embedder, cosine_similarity
from rag_core.ingest.profiles import ChunkingOptions, resolve_options
from rag_core.tokens.counter import TokenCounter
from rag_core.types import Chunk, ChunkingStrategy, DocumentStructure, DocumentType, Section

logger = logging.getLogger(__name__)

_SENTENCE_END = re.compile(r"([.!?。！？]+)\s+")
_WHITESPACE = re.compile(r"\s")


@dataclass(slots=True)
class _Sentence:
    start: int
    end: int
    tokens: int
    paragraph_index: int | None
    section: Section | None
    group: int = 0


@dataclass(slots=True)
class ChunkingOutcome:
    """Result of the semantic path: chunks, or the error that stopped it."""

    chunks: list[Chunk] = field(default_factory=list)
    error: ChunkingError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, chunks: list[Chunk]) -> "ChunkingOutcome":
        return cls(chunks=chunks)

    @classmethod
    def failure(cls, error: ChunkingError) -> "ChunkingOutcome":
        return cls(error=error)


@dataclass(slots=True)
class ChunkSource:
    """Identity stamped onto every chunk of one document."""

    document_id: str
    user_id: str = ""
    topic_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def chunk_id(source: ChunkSource, index: int) -> str:
    """Chunk ids double as vector ids, so they carry the owning user."""

    base = f"{source.document_id}-chunk-{index:04d}"
    return f"{source.user_id}:{base}" if source.user_id else base


class SentenceChunker:
    """Packs sentences into token-bounded chunks.

    Design notes:
    1. Sentences never cross paragraphs.
       Text is cut into paragraph segments first (plus any stray text between
       them), then each segment is split on sentence punctuation and on heading
       starts. Every sentence is a trimmed character span, so the union of all
       sentences covers every non-whitespace character exactly once.

    2. Greedy packing with bounded overflow.
       A chunk closes when the next sentence would push it past `max_tokens` and
       either that sentence opens a new paragraph or the chunk already holds
       `min_tokens`. It always closes before exceeding `max_tokens` by more than
       `overflow_tolerance`. Once the chunk is `paragraph_break_ratio` full, a
       section change (or a paragraph change, when the chunk is past
       `min_tokens`) also closes it.

    3. Overlap by whole sentences.
       The next chunk restarts with the trailing sentences of the previous one
       that fit in `overlap_tokens`. Chunk content is the exact source slice, so
       `overlap_chars` tells consumers how much of the prefix is repeated.
    """

    def __init__(
        self,
        counter: TokenCounter | None = None,
        config: ChunkingConfig | None = None,
        detector: BoundaryDetector | None = None,
    ) -> None:
        self.config = config or ChunkingConfig()
        self.counter = counter or TokenCounter()
        self.detector = detector or BoundaryDetector()

    def chunk(
        self,
        text: str,
        source: ChunkSource,
        options: ChunkingOptions | None = None,
    ) -> list[Chunk]:
        if not text or not text.strip():
            return []
        opts = options or resolve_options(self.config)
        structure = self.detector.detect_structure(text)
        total = self.count_tokens(text)
        if total <= opts.max_tokens:
            return [self.single_chunk(text, source, structure, total, opts)]

        sentences = self.split_sentences(text, structure, opts.max_tokens)
        chunks = self.pack(text, sentences, source, structure, opts)
        logger.info(
            "Text chunking completed",
            extra={
                "document_id": source.document_id,
                "chunks": len(chunks),
                "total_tokens": sum(c.token_count for c in chunks),
                "strategy": ChunkingStrategy.SENTENCE.value,
            },
        )
        return chunks

    def split_sentences(
        self, text: str, structure: DocumentStructure, max_tokens: int | None = None
    ) -> list[_Sentence]:
        limit = max_tokens or self.config.max_tokens
        section_starts = sorted(s.start_char for s in structure.sections)
        sentences: list[_Sentence] = []
        for seg_start, seg_end, paragraph_index in _segments(text, structure):
            cuts = [seg_start]
            cuts.extend(pos for pos in section_starts if seg_start < pos < seg_end)
            cuts.append(seg_end)
            for piece_start, piece_end in zip(cuts, cuts[1:]):
                for start, end in _sentence_spans(text, piece_start, piece_end):
                    section = self.detector.find_section_at(structure.sections, start)
                    sentences.extend(self._bounded(text, start, end, limit, paragraph_index, section))
        return sentences

    def pack(
        self,
        text: str,
        sentences: list[_Sentence],
        source: ChunkSource,
        structure: DocumentStructure,
        opts: ChunkingOptions,
    ) -> list[Chunk]:
        cfg = self.config
        hard_cap = opts.max_tokens * (1 + cfg.overflow_tolerance)
        soft_cap = opts.max_tokens * cfg.paragraph_break_ratio

        groups: list[list[_Sentence]] = []
        current: list[_Sentence] = []
        current_tokens = 0
        # number of leading sentences in `current` carried over from the previous chunk
        carried = 0

        for sentence in sentences:
            if current:
                last = current[-1]
                total = current_tokens + sentence.tokens
                new_paragraph = (
                    last.paragraph_index != sentence.paragraph_index or last.group != sentence.group
                )
                new_section = _section_index(last.section) != _section_index(sentence.section)

                should_break = total > hard_cap or (
                    total > opts.max_tokens and (new_paragraph or current_tokens >= opts.min_tokens)
                )
                if cfg.respect_section_boundaries and new_section and total > soft_cap:
                    should_break = True
                if (
                    cfg.respect_paragraph_boundaries
                    and new_paragraph
                    and total > soft_cap
                    and current_tokens >= opts.min_tokens
                ):
                    should_break = True

                if should_break and len(current) > carried:
                    groups.append(current)
                    if cfg.respect_section_boundaries and new_section:
                        overlap: list[_Sentence] = []
                    else:
                        overlap = self._overlap(current, sentence.tokens, opts.overlap_tokens, hard_cap)
                    current = [*overlap, sentence]
                    carried = len(overlap)
                    current_tokens = sum(s.tokens for s in current)
                    continue

            current.append(sentence)
            current_tokens += sentence.tokens

        if current and len(current) > carried:
            groups.append(current)

        chunks: list[Chunk] = []
        for group in groups:
            start, end = group[0].start, group[-1].end
            chunk = self._make_chunk(text, source, structure, opts, len(chunks), start, end, group)
            if chunks:
                chunk.overlap_chars = max(0, chunks[-1].end_char - start)
            chunks.append(chunk)

        if len(chunks) > 1 and chunks[-1].token_count < opts.min_tokens:
            last, previous = chunks[-1], chunks[-2]
            merged_tokens = self.count_tokens(text[previous.start_char : last.end_char])
            if merged_tokens <= hard_cap:
                chunks[-2] = self._rebuild(text, structure, previous, previous.start_char, last.end_char)
                chunks.pop()
        return chunks

    def single_chunk(
        self,
        text: str,
        source: ChunkSource,
        structure: DocumentStructure,
        total: int,
        opts: ChunkingOptions,
    ) -> Chunk:
        start = len(text) - len(text.lstrip())
        end = len(text.rstrip())
        chunk = self._make_chunk(text, source, structure, opts, 0, start, end, [])
        chunk.token_count = total
        return chunk

    def _make_chunk(
        self,
        text: str,
        source: ChunkSource,
        structure: DocumentStructure,
        opts: ChunkingOptions,
        index: int,
        start: int,
        end: int,
        group: list[_Sentence],
    ) -> Chunk:
        content = text[start:end]
        section = group[0].section if group else self.detector.find_section_at(structure.sections, start)
        paragraphs = self.detector.paragraphs_in_range(structure.paragraphs, start, end)
        return Chunk(
            id=chunk_id(source, index),
            document_id=source.document_id,
            user_id=source.user_id,
            topic_id=source.topic_id,
            chunk_index=index,
            content=content,
            start_char=start,
            end_char=end,
            token_count=self.count_tokens(content),
            paragraph_indices=[p.index for p in paragraphs],
            section=section.ref() if section else None,
            metadata={
                **source.metadata,
                "chunk_index": index,
                "document_type": opts.document_type.value,
            },
        )

    def _rebuild(self, text: str, structure: DocumentStructure, chunk: Chunk, start: int, end: int) -> Chunk:
        content = text[start:end]
        chunk.content = content
        chunk.end_char = end
        chunk.token_count = self.count_tokens(content)
        chunk.paragraph_indices = [
            p.index for p in self.detector.paragraphs_in_range(structure.paragraphs, start, end)
        ]
        return chunk

    def _overlap(
        self, finished: list[_Sentence], incoming: int, overlap_tokens: int, hard_cap: float
    ) -> list[_Sentence]:
        if overlap_tokens <= 0:
            return []
        overlap: list[_Sentence] = []
        used = 0
        # the first sentence stays behind so every chunk advances
        for sentence in reversed(finished[1:]):
            if used + sentence.tokens > overlap_tokens or used + sentence.tokens + incoming > hard_cap:
                break
            overlap.insert(0, sentence)
            used += sentence.tokens
        return overlap

    def _bounded(
        self,
        text: str,
        start: int,
        end: int,
        limit: int,
        paragraph_index: int | None,
        section: Section | None,
    ) -> list[_Sentence]:
        """Split a sentence longer than `max_tokens` into word-aligned windows."""

        tokens = self.count_tokens(text[start:end])
        if tokens <= limit:
            return [_Sentence(start, end, tokens, paragraph_index, section)] if tokens else []

        pieces: list[_Sentence] = []
        cursor = start
        while cursor < end:
            window = text[cursor:end]
            prefix = self.counter.truncate(window, limit, self._encoding())
            cut = _common_prefix(window, prefix)
            if cut < len(window):
                space = max(window.rfind(" ", 0, cut + 1), window.rfind("\n", 0, cut + 1))
                if space > 0:
                    cut = space
            if cut <= 0:
                next_space = _WHITESPACE.search(window)
                cut = next_space.start() if next_space and next_space.start() > 0 else len(window)
            piece_end = cursor + cut
            trimmed_end = len(text[:piece_end].rstrip())
            count = self.count_tokens(text[cursor:trimmed_end])
            if count:
                pieces.append(_Sentence(cursor, trimmed_end, count, paragraph_index, section))
            cursor = piece_end
            while cursor < end and text[cursor].isspace():
                cursor += 1
        return pieces

    def _encoding(self) -> str:
        return self.config.encoding or self.counter.default_encoding

    def count_tokens(self, text: str) -> int:
        return self.counter.count(text, self._encoding())


class SemanticChunker:
    """Groups adjacent sentences by embedding similarity, then packs the groups.

    Each sentence joins the running group when its cosine similarity to the
    group centroid reaches `similarity_threshold`; otherwise it opens a new
    group. Group changes are treated like paragraph changes by the packer, so
    size limits, overlap and tolerance behave exactly as in `SentenceChunker`.
    """

    def __init__(self, sentence_chunker: SentenceChunker, embedder: Embedder) -> None:
        self.sentence_chunker = sentence_chunker
        self.embedder = embedder

    @property
    def config(self) -> ChunkingConfig:
        return self.sentence_chunker.config

    async def chunk(
        self,
        text: str,
        source: ChunkSource,
        options: ChunkingOptions | None = None,
    ) -> ChunkingOutcome:
        if not text or not text.strip():
            return ChunkingOutcome.success([])
        base = self.sentence_chunker
        opts = options or resolve_options(self.config)
        structure = base.detector.detect_structure(text)
        sentences = base.split_sentences(text, structure, opts.max_tokens)
        if not sentences:
            return ChunkingOutcome.success([])

        try:
            vectors = await self.embedder.embed_documents([text[s.start : s.end] for s in sentences])
        except Exception as exc:
            logger.warning("Sentence embedding failed", extra={"document_id": source.document_id})
            return ChunkingOutcome.failure(
                ChunkingError(f"Failed to embed sentences: {exc}", details={"document_id": source.document_id})
            )
        if len(vectors) != len(sentences):
            return ChunkingOutcome.failure(ChunkingError("Embedding count does not match sentence count"))

        self._assign_groups(sentences, vectors, self.config.semantic.similarity_threshold)
        total = base.count_tokens(text)
        if total <= opts.max_tokens:
            return ChunkingOutcome.success([base.single_chunk(text, source, structure, total, opts)])
        chunks = base.pack(text, sentences, source, structure, opts)
        for chunk in chunks:
            chunk.metadata["strategy"] = ChunkingStrategy.SEMANTIC.value
        return ChunkingOutcome.success(chunks)

    @staticmethod
    def _assign_groups(sentences: list[_Sentence], vectors: list[list[float]], threshold: float) -> None:
        group = 0
        centroid = list(vectors[0])
        members = 1
        sentences[0].group = group
        for sentence, vector in zip(sentences[1:], vectors[1:]):
            if cosine_similarity(centroid, vector) >= threshold:
                members += 1
                centroid = [c + (v - c) / members for c, v in zip(centroid, vector)]
            else:
                group += 1
                centroid = list(vector)
                members = 1
            sentence.group = group


class AdaptiveChunker:
    """Selects sizes from the document type and dispatches on the strategy."""

    def __init__(
        self,
        counter: TokenCounter | None = None,
        config: ChunkingConfig | None = None,
        embedder: Embedder | None = None,
    ) -> None:
        self.config = config or ChunkingConfig()
        self.sentence = SentenceChunker(counter, self.config)
        self.semantic = SemanticChunker(self.sentence, embedder) if embedder is not None else None

    async def chunk(
        self,
        text: str,
        source: ChunkSource,
        *,
        document_type: DocumentType | None = None,
        strategy: ChunkingStrategy | None = None,
    ) -> list[Chunk]:
        opts = resolve_options(self.config, document_type)
        selected = strategy or opts.strategy

        if selected is ChunkingStrategy.SENTENCE:
            return self.sentence.chunk(text, source, opts)
        if selected is ChunkingStrategy.HYBRID:
            structure = self.sentence.detector.detect_structure(text) if text.strip() else None
            count = len(self.sentence.split_sentences(text, structure, opts.max_tokens)) if structure else 0
            if count < self.config.semantic.min_sentences_for_semantic:
                return self.sentence.chunk(text, source, opts)
        elif selected is not ChunkingStrategy.SEMANTIC:
            raise ValueError(f"Unsupported chunking strategy: {selected}")

        if self.semantic is None:
            outcome = ChunkingOutcome.failure(ChunkingError("Semantic chunking requires an embedder"))
        else:
            outcome = await self.semantic.chunk(text, source, opts)
        if outcome.error is None:
            return outcome.chunks
        if not self.config.semantic.fallback_to_sentence:
            raise outcome.error
        logger.warning(
            "Semantic chunking failed, falling back to sentence-based",
            extra={"document_id": source.document_id, "error": str(outcome.error)},
        )
        return self.sentence.chunk(text, source, opts)

    async def compare_strategies(
        self, text: str, *, document_type: DocumentType | None = None
    ) -> dict[str, dict[str, Any]]:
        """Chunk the same text with every strategy and summarize the shapes."""

        source = ChunkSource(document_id="comparison")
        report: dict[str, dict[str, Any]] = {}
        for strategy in ChunkingStrategy:
            try:
                chunks = await self.chunk(text, source, document_type=document_type, strategy=strategy)
            except ChunkingError as exc:
                report[strategy.value] = {"error": exc.message, "chunk_count": 0}
                continue
            sizes = [c.token_count for c in chunks]
            report[strategy.value] = {
                "chunk_count": len(chunks),
                "avg_tokens": sum(sizes) / len(sizes) if sizes else 0.0,
                "min_tokens": min(sizes, default=0),
                "max_tokens": max(sizes, default=0),
                "sections_preserved": len({c.section.index for c in chunks if c.section}),
            }
        return report


def _segments(text: str, structure: DocumentStructure) -> list[tuple[int, int, int | None]]:
    """Paragraph spans plus any non-blank text that falls between them."""

    segments: list[tuple[int, int, int | None]] = []
    cursor = 0
    for paragraph in structure.paragraphs:
        if text[cursor : paragraph.start_char].strip():
            segments.append((cursor, paragraph.start_char, None))
        segments.append((paragraph.start_char, paragraph.end_char, paragraph.index))
        cursor = max(cursor, paragraph.end_char)
    if text[cursor:].strip():
        segments.append((cursor, len(text), None))
    return segments


def _sentence_spans(text: str, start: int, end: int) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    cursor = start
    for match in _SENTENCE_END.finditer(text, start, end):
        spans.append((cursor, match.start() + len(match.group(1))))
        cursor = match.end()
    spans.append((cursor, end))

    trimmed: list[tuple[int, int]] = []
    for span_start, span_end in spans:
        while span_start < span_end and text[span_start].isspace():
            span_start += 1
        while span_end > span_start and text[span_end - 1].isspace():
            span_end -= 1
        if span_start < span_end:
            trimmed.append((span_start, span_end))
    return trimmed


def _section_index(section: Section | None) -> int | None:
    return section.index if section else None


def _common_prefix(a: str, b: str) -> int:
    size = min(len(a), len(b))
    for i in range(size):
        if a[i] != b[i]:
            return i
    return size
