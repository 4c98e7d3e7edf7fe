"""Persisted chunk access used to hydrate hits and rebuild lexical shards."""

from __future__ import annotations

import threading
from typing import Protocol

from rag_core.types import Chunk


class ChunkStore(Protocol):
    """Read/write access to chunks keyed by `(user_id, document_id, chunk_index)`.

    Document ids are only unique within one user, so every lookup is scoped
    by the owning user.
    """

    def put_many(self, chunks: list[Chunk]) -> None:
        """Persist chunks, replacing any with the same key."""

    def get(self, user_id: str, document_id: str, chunk_index: int) -> Chunk | None:
        """Fetch one chunk."""

    def list_document(self, user_id: str, document_id: str) -> list[Chunk]:
        """Chunks of one document in index order."""

    def list_user(self, user_id: str) -> list[Chunk]:
        """All chunks owned by a user."""

    def delete_document(self, user_id: str, document_id: str) -> int:
        """Remove a document's chunks and return how many were removed."""


class InMemoryChunkStore:
    """Deterministic chunk store used for tests and local prototyping."""

    def __init__(self) -> None:
        self._chunks: dict[tuple[str, str, int], Chunk] = {}
        self._lock = threading.Lock()

    def put_many(self, chunks: list[Chunk]) -> None:
        with self._lock:
            for chunk in chunks:
                self._chunks[(chunk.user_id, chunk.document_id, chunk.chunk_index)] = chunk

    def get(self, user_id: str, document_id: str, chunk_index: int) -> Chunk | None:
        return self._chunks.get((user_id, document_id, chunk_index))

    def list_document(self, user_id: str, document_id: str) -> list[Chunk]:
        with self._lock:
            found = [
                c for (owner, doc_id, _), c in self._chunks.items() if owner == user_id and doc_id == document_id
            ]
        return sorted(found, key=lambda c: c.chunk_index)

    def list_user(self, user_id: str) -> list[Chunk]:
        with self._lock:
            found = [c for (owner, _, _), c in self._chunks.items() if owner == user_id]
        return sorted(found, key=lambda c: (c.document_id, c.chunk_index))

    def delete_document(self, user_id: str, document_id: str) -> int:
        with self._lock:
            keys = [key for key in self._chunks if key[0] == user_id and key[1] == document_id]
            for key in keys:
                del self._chunks[key]
        return len(keys)

    def __len__(self) -> int:
        return len(self._chunks)
