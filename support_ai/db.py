"""Database helpers for async psycopg connections."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from pgvector.psycopg import register_vector_async
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)


def resolve_dsn(dsn: str | None = None) -> str:
    """Return ``dsn`` or ``DATABASE_URL``; raise ``RuntimeError`` when neither is set."""

    resolved = dsn or os.getenv("DATABASE_URL")
    if not resolved:
        raise RuntimeError("DATABASE_URL not configured")
    return resolved


class PostgresStore:
    """Base class for repositories that open one connection per operation.

    The connection commits when the block exits cleanly and rolls back when
    it raises, so multi-statement writes inside one ``_connect()`` block are
    atomic.
    """

    def __init__(self, dsn: str | None = None, *, vectors: bool = False) -> None:
        self._dsn = resolve_dsn(dsn)
        self._vectors = vectors

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[psycopg.AsyncConnection[dict[str, Any]]]:
        conn = await psycopg.AsyncConnection.connect(self._dsn, row_factory=dict_row)
        async with conn:
            if self._vectors:
                await register_vector_async(conn)
            yield conn
