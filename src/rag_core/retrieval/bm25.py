"""In-memory BM25 lexical index with per-tenant shards."""

from __future__ import annotations

import logging
import re
import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from math import log
from typing import Any, TypeVar

from rag_core.config import BM25Config
from rag_core.errors import IndexStateError, ValidationError
from rag_core.retrieval.chunk_store import ChunkStore
from rag_core.types import Chunk, IndexedDocument

logger = logging.getLogger(__name__)

_TOKEN_SPLIT = re.compile(r"[^0-9a-z]+")
_T = TypeVar("_T")


def tokenize(text: str) -> list[str]:
    """Lowercase and split on non-alphanumeric runs. Stop-words are kept."""

    return [token for token in _TOKEN_SPLIT.split(text.lower()) if token]


@dataclass(slots=True)
class BM25Hit:
    document: IndexedDocument
    score: float


class BM25Index:
    """Inverted index scoring chunks with Okapi BM25.

    `score = sum(idf * tf * (k1 + 1) / (tf + k1 * (1 - b + b * len / avg_len)))`
    with `idf = log(1 + (N - df + 0.5) / (df + 0.5))`, which stays positive
    even for terms present in every document.

    Writers hold the index lock; searches take the same lock only long enough
    to score, so a search never sees a half-applied add or remove.
    """

    def __init__(self, config: BM25Config | None = None, *, shard: str = "default") -> None:
        self.config = config or BM25Config()
        self.shard = shard
        self._documents: dict[str, IndexedDocument] = {}
        self._term_freqs: dict[str, Counter[str]] = {}
        self._lengths: dict[str, int] = {}
        self._postings: dict[str, set[str]] = {}
        self._total_length = 0
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._documents)

    def add(self, document: IndexedDocument) -> None:
        if not document.content.strip():
            # empty content is never indexed
            return
        with self._lock:
            if document.id in self._documents:
                self._remove_locked(document.id)
            tokens = tokenize(document.content)
            freqs = Counter(tokens)
            self._documents[document.id] = document
            self._term_freqs[document.id] = freqs
            self._lengths[document.id] = len(tokens)
            self._total_length += len(tokens)
            for term in freqs:
                self._postings.setdefault(term, set()).add(document.id)

    def add_many(self, documents: list[IndexedDocument]) -> None:
        with self._lock:
            for document in documents:
                self.add(document)

    def remove(self, doc_id: str) -> bool:
        with self._lock:
            if doc_id not in self._documents:
                return False
            self._remove_locked(doc_id)
            return True

    def remove_document_chunks(self, document_id: str) -> int:
        with self._lock:
            ids = [d.id for d in self._documents.values() if d.document_id == document_id]
            for doc_id in ids:
                self._remove_locked(doc_id)
            return len(ids)

    def clear(self) -> None:
        with self._lock:
            self._documents.clear()
            self._term_freqs.clear()
            self._lengths.clear()
            self._postings.clear()
            self._total_length = 0

    def search(
        self,
        query: str,
        *,
        user_id: str,
        topic_id: str | None = None,
        document_ids: list[str] | None = None,
        top_k: int | None = None,
        min_score: float = 0.0,
    ) -> list[BM25Hit]:
        if not user_id:
            raise ValidationError("user_id is required for lexical search")
        terms = tokenize(query)
        if not terms:
            return []
        limit = top_k or self.config.default_top_k
        allowed = set(document_ids) if document_ids else None

        with self._lock:
            if not self._documents:
                return []
            candidates: set[str] = set()
            for term in set(terms):
                candidates |= self._postings.get(term, set())

            hits: list[BM25Hit] = []
            for doc_id in candidates:
                document = self._documents.get(doc_id)
                if document is None:
                    raise IndexStateError(
                        f"Posting references missing entry {doc_id}", shard=self.shard
                    )
                if document.user_id != user_id:
                    continue
                if topic_id is not None and document.topic_id != topic_id:
                    continue
                if allowed is not None and document.document_id not in allowed:
                    continue
                score = self._score(doc_id, terms)
                if score > 0 and score >= min_score:
                    hits.append(BM25Hit(document=document, score=score))

        hits.sort(key=lambda hit: (-hit.score, hit.document.id))
        return hits[:limit]

    def idf(self, term: str) -> float:
        total = len(self._documents)
        df = len(self._postings.get(term, ()))
        return log(1.0 + (total - df + 0.5) / (df + 0.5))

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = len(self._documents)
            return {
                "shard": self.shard,
                "documents": total,
                "terms": len(self._postings),
                "average_length": self._total_length / total if total else 0.0,
                "source_documents": len({d.document_id for d in self._documents.values()}),
            }

    def check_consistency(self) -> None:
        """Raise `IndexStateError` when postings and entries disagree."""

        with self._lock:
            for term, ids in self._postings.items():
                for doc_id in ids:
                    if doc_id not in self._documents or term not in self._term_freqs.get(doc_id, {}):
                        raise IndexStateError(
                            f"Posting for '{term}' references stale entry {doc_id}", shard=self.shard
                        )
            if sum(self._lengths.values()) != self._total_length:
                raise IndexStateError("Length totals are out of sync", shard=self.shard)

    def _score(self, doc_id: str, terms: list[str]) -> float:
        k1, b = self.config.k1, self.config.b
        freqs = self._term_freqs[doc_id]
        length = self._lengths[doc_id]
        avg_length = self._total_length / len(self._documents) if self._documents else 0.0
        norm = 1 - b + b * (length / avg_length) if avg_length > 0 else 1.0
        score = 0.0
        for term in terms:
            tf = freqs.get(term, 0)
            if tf == 0:
                continue
            score += self.idf(term) * (tf * (k1 + 1)) / (tf + k1 * norm)
        return score

    def _remove_locked(self, doc_id: str) -> None:
        self._documents.pop(doc_id, None)
        freqs = self._term_freqs.pop(doc_id, Counter())
        self._total_length -= self._lengths.pop(doc_id, 0)
        for term in freqs:
            ids = self._postings.get(term)
            if ids is None:
                continue
            ids.discard(doc_id)
            if not ids:
                del self._postings[term]


class IndexRegistry:
    """One `BM25Index` per shard key (the owning user id).

    Shards are created lazily. Mutations of one shard are serialized by that
    shard's lock; different shards never block each other.
    """

    def __init__(self, config: BM25Config | None = None, chunk_store: ChunkStore | None = None) -> None:
        self.config = config or BM25Config()
        self.chunk_store = chunk_store
        self._shards: dict[str, BM25Index] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def shard(self, key: str) -> BM25Index:
        with self._registry_lock:
            index = self._shards.get(key)
            if index is None:
                index = BM25Index(self.config, shard=key)
                self._shards[key] = index
                self._locks[key] = threading.Lock()
            return index

    def add_chunks(self, chunks: list[Chunk]) -> int:
        added = 0
        by_user: dict[str, list[IndexedDocument]] = {}
        for chunk in chunks:
            if chunk.token_count <= 0 or not chunk.content.strip():
                continue
            by_user.setdefault(chunk.user_id, []).append(IndexedDocument.from_chunk(chunk))
        for user_id, documents in by_user.items():
            self._with_shard(user_id, lambda index: index.add_many(documents))
            added += len(documents)
        return added

    def remove_document(self, user_id: str, document_id: str) -> int:
        return self._with_shard(user_id, lambda index: index.remove_document_chunks(document_id))

    def search(self, query: str, *, user_id: str, **filters: Any) -> list[BM25Hit]:
        """Search the user's shard, rebuilding it once if it is found inconsistent."""

        index = self.shard(user_id)
        try:
            return index.search(query, user_id=user_id, **filters)
        except IndexStateError as exc:
            logger.warning("Lexical shard inconsistent, rebuilding", extra={"shard": exc.shard})
            if self.chunk_store is None:
                return []
            self.rebuild(user_id, self.chunk_store)
            return self.shard(user_id).search(query, user_id=user_id, **filters)

    def rebuild(self, shard: str, chunk_store: ChunkStore) -> int:
        chunks = chunk_store.list_user(shard)
        documents = [
            IndexedDocument.from_chunk(c) for c in chunks if c.token_count > 0 and c.content.strip()
        ]

        def _reload(index: BM25Index) -> int:
            index.clear()
            index.add_many(documents)
            return len(documents)

        count = self._with_shard(shard, _reload)
        logger.info("Lexical shard rebuilt", extra={"shard": shard, "documents": count})
        return count

    def stats(self) -> dict[str, Any]:
        with self._registry_lock:
            shards = list(self._shards.values())
        per_shard = [index.stats() for index in shards]
        return {
            "shards": len(per_shard),
            "documents": sum(s["documents"] for s in per_shard),
            "per_shard": per_shard,
        }

    def _with_shard(self, key: str, action: Callable[[BM25Index], _T]) -> _T:
        index = self.shard(key)
        with self._locks[key]:
            return action(index)
