"""Retrieval context: embeddings, similarity search and prompt assembly."""

from .assembler import PromptTooLongError, RetrievalAssembler, RetrievalContext
from .cache import InMemoryEmbeddingCache, PostgresEmbeddingCache, cache_key
from .embeddings import CachedEmbedder, FastEmbedEmbedder
from .store import InMemoryKnowledgeStore, PostgresKnowledgeStore

__all__ = [
    "CachedEmbedder",
    "FastEmbedEmbedder",
    "InMemoryEmbeddingCache",
    "InMemoryKnowledgeStore",
    "PostgresEmbeddingCache",
    "PostgresKnowledgeStore",
    "PromptTooLongError",
    "RetrievalAssembler",
    "RetrievalContext",
    "cache_key",
]
