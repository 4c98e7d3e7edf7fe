"""Chunk sizing per document type."""

from __future__ import annotations

from dataclasses import dataclass

from rag_core.config import AdaptiveChunkingConfig, ChunkingConfig, ChunkSizeProfile
from rag_core.types import ChunkingStrategy, DocumentType, OverlapMode

_LARGE_CHUNK_TOKENS = 1000
_SMALL_CHUNK_TOKENS = 500
_DYNAMIC_STEP = 0.02


@dataclass(slots=True)
class ChunkingOptions:
    """Resolved sizes for one chunking call."""

    max_tokens: int
    min_tokens: int
    overlap_tokens: int
    strategy: ChunkingStrategy
    document_type: DocumentType = DocumentType.UNKNOWN


def calculate_overlap_size(
    max_tokens: int,
    mode: OverlapMode,
    adaptive: AdaptiveChunkingConfig,
    profile: ChunkSizeProfile | None = None,
    *,
    fixed_tokens: int | None = None,
) -> int:
    """Overlap in tokens for a chunk of `max_tokens`.

    `fixed` uses `fixed_tokens` when given, `ratio` the profile's ratio, and
    `dynamic` shifts the base ratio down for very large chunks and up for
    small ones, staying within the configured min/max ratios.
    """

    if mode is OverlapMode.FIXED and fixed_tokens is not None:
        overlap = fixed_tokens
    elif mode in (OverlapMode.FIXED, OverlapMode.RATIO) and profile is not None:
        overlap = round(max_tokens * profile.overlap_ratio)
    else:
        ratio = adaptive.base_overlap_ratio
        if max_tokens > _LARGE_CHUNK_TOKENS:
            ratio = max(adaptive.min_overlap_ratio, ratio - _DYNAMIC_STEP)
        elif max_tokens < _SMALL_CHUNK_TOKENS:
            ratio = min(adaptive.max_overlap_ratio, ratio + _DYNAMIC_STEP)
        ratio = min(max(ratio, adaptive.min_overlap_ratio), adaptive.max_overlap_ratio)
        overlap = round(max_tokens * ratio)
    return max(0, min(overlap, max_tokens - 1))


def resolve_options(config: ChunkingConfig, document_type: DocumentType | None = None) -> ChunkingOptions:
    """Pick sizes from the type profile, or the plain config when adaptive sizing is off."""

    doc_type = document_type or DocumentType.UNKNOWN
    adaptive = config.adaptive
    if not adaptive.enabled or document_type is None:
        return ChunkingOptions(
            max_tokens=config.max_tokens,
            min_tokens=config.min_tokens,
            overlap_tokens=config.overlap_tokens,
            strategy=config.strategy,
            document_type=doc_type,
        )

    profile = adaptive.profiles.get(doc_type) or adaptive.profiles[DocumentType.UNKNOWN]
    overlap = calculate_overlap_size(
        profile.max_tokens,
        adaptive.overlap_mode,
        adaptive,
        profile,
        fixed_tokens=config.overlap_tokens,
    )
    return ChunkingOptions(
        max_tokens=profile.max_tokens,
        min_tokens=min(profile.min_tokens, profile.max_tokens),
        overlap_tokens=overlap,
        strategy=profile.preferred_strategy or config.strategy,
        document_type=doc_type,
    )
