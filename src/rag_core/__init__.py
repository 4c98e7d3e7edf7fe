"""RAG retrieval core package."""

from .config import ChunkingConfig, CoreConfig, RetrievalConfig

__all__ = ["ChunkingConfig", "CoreConfig", "RetrievalConfig"]
