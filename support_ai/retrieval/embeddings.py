"""Embedding providers and the read-through cached embedder."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Protocol

from fastembed import TextEmbedding

from .cache import DEFAULT_TTL_SECONDS, EmbeddingCache

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class FastEmbedEmbedder:
    """Local sentence embeddings via fastembed.

    The ONNX model is loaded on first use and inference runs in a worker
    thread so the event loop stays responsive.
    """

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name
        self._model: TextEmbedding | None = None
        self._lock = threading.Lock()

    def _load(self) -> TextEmbedding:
        with self._lock:
            if self._model is None:
                logger.info("Loading embedding model %s", self.model_name)
                self._model = TextEmbedding(model_name=self.model_name)
            return self._model

    def _embed_sync(self, text: str) -> list[float]:
        vector = next(iter(self._load().embed([text])))
        return [float(x) for x in vector]

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self._embed_sync, text)


class CachedEmbedder:
    """Embed text through an :class:`EmbeddingCache`.

    Cache failures are logged and otherwise ignored: a broken cache costs a
    recomputation, never a failed request. Errors from the embedding provider
    itself propagate.
    """

    def __init__(
        self,
        embedder: Embedder,
        cache: EmbeddingCache,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._embedder = embedder
        self._cache = cache
        self._ttl = ttl_seconds

    async def embed(self, text: str, *, skip_cache: bool = False) -> list[float]:
        if not skip_cache:
            try:
                cached = await self._cache.get(text)
            except Exception:
                logger.warning("Embedding cache read failed", exc_info=True)
                cached = None
            if cached is not None:
                return cached

        vector = await self._embedder.embed(text)

        if not skip_cache:
            try:
                await self._cache.put(text, vector, ttl_seconds=self._ttl)
            except Exception:
                logger.warning("Embedding cache write failed", exc_info=True)
        return vector
