"""Content-addressed cache of text embeddings.

Keys are derived from the text with newlines folded to spaces, so two inputs
that only differ in line breaks share an entry. Entries expire after a TTL
(30 days by default).
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Protocol

from pgvector import Vector

from ..db import PostgresStore

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60 * 24 * 30


def normalize_text(text: str) -> str:
    return text.replace("\r\n", " ").replace("\n", " ")


def cache_key(text: str) -> str:
    digest = hashlib.md5(normalize_text(text).encode("utf-8")).hexdigest()
    return f"embedding:{digest}"


class EmbeddingCache(Protocol):
    async def get(self, text: str) -> list[float] | None: ...

    async def put(
        self, text: str, vector: Sequence[float], ttl_seconds: int | None = None
    ) -> None: ...


class InMemoryEmbeddingCache:
    """Thread-safe dictionary cache with per-entry expiry."""

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, list[float]]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def get(self, text: str) -> list[float] | None:
        key = cache_key(text)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, vector = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return list(vector)

    async def put(
        self, text: str, vector: Sequence[float], ttl_seconds: int | None = None
    ) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[cache_key(text)] = (self._clock() + ttl, list(vector))


class PostgresEmbeddingCache(PostgresStore):
    """Embedding cache stored in the ``embedding_cache`` table."""

    def __init__(self, dsn: str | None = None, *, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        super().__init__(dsn, vectors=True)
        self._ttl = ttl_seconds

    async def get(self, text: str) -> list[float] | None:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT embedding FROM embedding_cache
                WHERE key = %s AND expires_at > now()
                """,
                (cache_key(text),),
            )
            row = await cur.fetchone()
        if not row:
            return None
        return [float(x) for x in row["embedding"]]

    async def put(
        self, text: str, vector: Sequence[float], ttl_seconds: int | None = None
    ) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO embedding_cache (key, embedding, expires_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (key) DO UPDATE
                SET embedding = EXCLUDED.embedding, expires_at = EXCLUDED.expires_at
                """,
                (cache_key(text), Vector(list(vector)), expires_at),
            )
