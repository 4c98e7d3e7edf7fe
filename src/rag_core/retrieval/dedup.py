"""Exact, near-duplicate and similarity-based result deduplication."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from hashlib import sha1
from typing import TypeVar

from rag_core.config import DeduplicationConfig
from rag_core.types import ScoredResult, WebSearchResult

logger = logging.getLogger(__name__)

_Item = TypeVar("_Item", ScoredResult, WebSearchResult)
_WHITESPACE = re.compile(r"\s+")

CHARACTER_WEIGHT = 0.6
WORD_WEIGHT = 0.4


@dataclass(slots=True)
class DeduplicationStats:
    original_count: int
    deduplicated_count: int
    exact_duplicates_removed: int = 0
    near_duplicates_removed: int = 0
    similarity_duplicates_removed: int = 0
    processing_time_ms: float = 0.0

    @property
    def total_removed(self) -> int:
        return self.exact_duplicates_removed + self.near_duplicates_removed + self.similarity_duplicates_removed


def jaccard_similarity(text1: str, text2: str) -> float:
    """Word-set Jaccard. Two empty texts count as identical."""

    words1 = set(text1.lower().split())
    words2 = set(text2.lower().split())
    if not words1 and not words2:
        return 1.0
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


def character_similarity(text1: str, text2: str) -> float:
    """Longest common subsequence length over the longer normalized text."""

    a = text1.lower().strip()
    b = text2.lower().strip()
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return _lcs_length(a, b) / max(len(a), len(b))


def content_similarity(text1: str, text2: str, *, fuzzy: bool = True, threshold: float = 0.0) -> float:
    """Blend of character and word similarity, or word similarity alone.

    When `threshold` is given, the character pass is skipped for pairs whose
    word overlap is too low to reach it, and the word score is returned.
    """

    words = jaccard_similarity(text1, text2)
    if not fuzzy:
        return words
    best_possible = CHARACTER_WEIGHT + WORD_WEIGHT * words
    if best_possible < threshold:
        return words
    return CHARACTER_WEIGHT * character_similarity(text1, text2) + WORD_WEIGHT * words


class Deduplicator:
    """Removes repeated content in three passes.

    1. Content hash, verified with a character comparison so a collision never
       drops a distinct result.
    2. Near duplicates at `near_duplicate_threshold`.
    3. Broader similarity at `similarity_threshold`.

    With `preserve_highest_score` the higher-scoring copy survives, in the
    position of the copy it replaced.
    """

    def __init__(self, config: DeduplicationConfig | None = None) -> None:
        self.config = config or DeduplicationConfig()

    def deduplicate(self, results: list[_Item]) -> tuple[list[_Item], DeduplicationStats]:
        started = time.perf_counter()
        cfg = self.config
        stats = DeduplicationStats(original_count=len(results), deduplicated_count=len(results))
        if not cfg.enabled or len(results) <= 1:
            return list(results), stats

        current = list(results)
        if cfg.use_content_hash:
            before = len(current)
            current = self._exact(current)
            stats.exact_duplicates_removed = before - len(current)
        if cfg.near_duplicate_threshold < 1.0:
            before = len(current)
            current = self._by_similarity(current, cfg.near_duplicate_threshold)
            stats.near_duplicates_removed = before - len(current)
        if cfg.similarity_threshold < cfg.near_duplicate_threshold:
            before = len(current)
            current = self._by_similarity(current, cfg.similarity_threshold)
            stats.similarity_duplicates_removed = before - len(current)

        stats.deduplicated_count = len(current)
        stats.processing_time_ms = (time.perf_counter() - started) * 1000.0
        logger.debug(
            "Deduplication completed",
            extra={"original": stats.original_count, "removed": stats.total_removed},
        )
        return current, stats

    def quick_deduplicate(self, results: list[_Item], threshold: float = 0.95) -> list[_Item]:
        """Hash-only pass with a word-overlap check."""

        kept: list[_Item] = []
        by_hash: dict[str, int] = {}
        for result in results:
            digest = _content_hash(result.content)
            position = by_hash.get(digest)
            if position is None:
                by_hash[digest] = len(kept)
                kept.append(result)
                continue
            if jaccard_similarity(result.content, kept[position].content) >= threshold:
                if result.score > kept[position].score:
                    kept[position] = result
            else:
                kept.append(result)
        return kept

    def _exact(self, results: list[_Item]) -> list[_Item]:
        kept: list[_Item] = []
        by_hash: dict[str, int] = {}
        for result in results:
            digest = _content_hash(result.content)
            position = by_hash.get(digest)
            if position is None:
                by_hash[digest] = len(kept)
                kept.append(result)
                continue
            existing = kept[position]
            if character_similarity(result.content, existing.content) >= self.config.exact_duplicate_threshold:
                if self.config.preserve_highest_score and result.score > existing.score:
                    kept[position] = result
            else:
                kept.append(result)
        return kept

    def _by_similarity(self, results: list[_Item], threshold: float) -> list[_Item]:
        kept: list[_Item] = []
        seen: set[str] = set()
        for result in results:
            key = _item_key(result)
            if key in seen:
                continue
            best_index = -1
            best_similarity = 0.0
            for i, existing in enumerate(kept):
                similarity = content_similarity(
                    result.content,
                    existing.content,
                    fuzzy=self.config.use_fuzzy_matching,
                    threshold=threshold,
                )
                if similarity >= threshold and similarity > best_similarity:
                    best_similarity = similarity
                    best_index = i
            if best_index < 0:
                kept.append(result)
                seen.add(key)
            elif self.config.preserve_highest_score and result.score > kept[best_index].score:
                kept[best_index] = result
                seen.add(key)
        return kept


def _content_hash(content: str) -> str:
    normalized = _WHITESPACE.sub(" ", content.lower().strip())
    return sha1(normalized.encode("utf-8")).hexdigest()


def _item_key(item: ScoredResult | WebSearchResult) -> str:
    if isinstance(item, ScoredResult):
        return item.key
    return item.url


def _lcs_length(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = [0] * (len(b) + 1)
    for char_a in a:
        current = [0]
        for j, char_b in enumerate(b, start=1):
            if char_a == char_b:
                current.append(previous[j - 1] + 1)
            else:
                current.append(max(previous[j], current[j - 1]))
        previous = current
    return previous[-1]
