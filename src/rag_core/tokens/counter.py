"""Exact token counting with cached tokenizers."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Protocol

import tiktoken

from rag_core.config import TokenCounterConfig
from rag_core.errors import ValidationError

logger = logging.getLogger(__name__)

WORD_ENCODING = "word"
_WORD_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)

_MODEL_ENCODINGS: tuple[tuple[str, str], ...] = (
    ("gpt-4o", "o200k_base"),
    ("gpt-4", "cl100k_base"),
    ("gpt-3.5", "cl100k_base"),
    ("text-embedding", "cl100k_base"),
    ("code-", "p50k_base"),
    ("davinci", "p50k_base"),
    ("curie", "p50k_base"),
    ("babbage", "p50k_base"),
    ("ada", "p50k_base"),
)


class _Codec(Protocol):
    def count(self, text: str) -> int: ...

    def truncate(self, text: str, max_tokens: int) -> str: ...


class _TiktokenCodec:
    def __init__(self, encoding_name: str) -> None:
        self._encoding = tiktoken.get_encoding(encoding_name)

    def count(self, text: str) -> int:
        return len(self._encoding.encode(text, disallowed_special=()))

    def truncate(self, text: str, max_tokens: int) -> str:
        tokens = self._encoding.encode(text, disallowed_special=())
        if len(tokens) <= max_tokens:
            return text
        keep = max_tokens
        truncated = self._encoding.decode(tokens[:keep])
        # Decoding can split a multi-byte character; re-encoding may then grow.
        while keep > 0 and self.count(truncated) > max_tokens:
            keep -= 1
            truncated = self._encoding.decode(tokens[:keep])
        return truncated


class _WordCodec:
    """Word/punctuation tokenizer; deterministic and needs no vocabulary files."""

    def count(self, text: str) -> int:
        return len(_WORD_PATTERN.findall(text))

    def truncate(self, text: str, max_tokens: int) -> str:
        if max_tokens <= 0:
            return ""
        end = None
        for i, match in enumerate(_WORD_PATTERN.finditer(text), start=1):
            if i == max_tokens:
                end = match.end()
                break
        return text if end is None else text[:end]


@dataclass(slots=True)
class _CacheStats:
    hits: int = 0
    misses: int = 0


class TokenCounter:
    """Counts tokens for an encoding or model family.

    Tokenizers are created once per encoding name and shared by all callers;
    creation happens under a lock so concurrent first use builds one instance.
    """

    def __init__(self, config: TokenCounterConfig | None = None) -> None:
        self.config = config or TokenCounterConfig()
        self._codecs: dict[str, _Codec] = {}
        self._lock = threading.Lock()
        self._stats = _CacheStats()

    @property
    def default_encoding(self) -> str:
        return self.config.default_encoding

    def encoding_for_model(self, model: str | None) -> str:
        if not model or model == "auto":
            return self.config.default_encoding
        lowered = model.lower()
        for prefix, encoding in _MODEL_ENCODINGS:
            if prefix in lowered:
                return encoding
        return self.config.default_encoding

    def count(self, text: str, encoding: str | None = None, *, model: str | None = None) -> int:
        if not text or not text.strip():
            return 0
        return self._codec(self._resolve(encoding, model)).count(text)

    def count_batch(
        self, texts: list[str], encoding: str | None = None, *, model: str | None = None
    ) -> list[int]:
        name = self._resolve(encoding, model)
        return [self.count(text, name) for text in texts]

    def truncate(
        self,
        text: str,
        max_tokens: int,
        encoding: str | None = None,
        *,
        model: str | None = None,
    ) -> str:
        """Return the longest prefix of `text` holding at most `max_tokens` tokens."""
        if max_tokens <= 0 or not text:
            return ""
        return self._codec(self._resolve(encoding, model)).truncate(text, max_tokens)

    def clear_cache(self) -> None:
        with self._lock:
            self._codecs.clear()
            self._stats = _CacheStats()

    def cache_stats(self) -> dict[str, object]:
        with self._lock:
            return {
                "encodings": sorted(self._codecs),
                "hits": self._stats.hits,
                "misses": self._stats.misses,
            }

    def _resolve(self, encoding: str | None, model: str | None) -> str:
        if encoding and encoding != "auto":
            return encoding
        if model:
            return self.encoding_for_model(model)
        return self.config.default_encoding

    def _codec(self, name: str) -> _Codec:
        with self._lock:
            codec = self._codecs.get(name)
            if codec is not None:
                self._stats.hits += 1
                return codec
            self._stats.misses += 1
            codec = self._build(name)
            self._codecs[name] = codec
            return codec

    @staticmethod
    def _build(name: str) -> _Codec:
        if name == WORD_ENCODING:
            return _WordCodec()
        try:
            codec = _TiktokenCodec(name)
        except ValueError as exc:
            raise ValidationError(f"Unknown encoding: {name}") from exc
        logger.info("Tokenizer initialized", extra={"encoding": name})
        return codec
