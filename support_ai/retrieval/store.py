"""Similarity search over the knowledge bank and past conversations."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np
from pgvector import Vector

from ..db import PostgresStore


@dataclass(frozen=True)
class ScoredKnowledgeEntry:
    id: int
    content: str
    similarity: float


@dataclass(frozen=True)
class ScoredConversation:
    id: int
    slug: str
    similarity: float
    first_message: str | None = None


@dataclass(frozen=True)
class StyleLinter:
    before: str
    after: str


class KnowledgeStore(Protocol):
    async def search_knowledge_bank(
        self, vector: Sequence[float], threshold: float, limit: int
    ) -> list[ScoredKnowledgeEntry]: ...

    async def search_past_conversations(
        self,
        vector: Sequence[float],
        threshold: float,
        limit: int,
        exclude_slug: str | None = None,
    ) -> list[ScoredConversation]: ...

    async def first_message_body(self, conversation_id: int) -> str | None: ...

    async def list_style_linters(self) -> list[StyleLinter]: ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0 or math.isnan(denom):
        return 0.0
    return float(np.dot(va, vb) / denom)


class PostgresKnowledgeStore(PostgresStore):
    """pgvector-backed store; similarity is ``1 - cosine distance``."""

    def __init__(self, dsn: str | None = None) -> None:
        super().__init__(dsn, vectors=True)

    async def search_knowledge_bank(
        self, vector: Sequence[float], threshold: float, limit: int
    ) -> list[ScoredKnowledgeEntry]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT id, content, 1 - (embedding <=> %(v)s) AS similarity
                FROM knowledge_bank
                WHERE enabled AND embedding IS NOT NULL
                  AND 1 - (embedding <=> %(v)s) > %(threshold)s
                ORDER BY similarity DESC
                LIMIT %(limit)s
                """,
                {"v": Vector(list(vector)), "threshold": threshold, "limit": limit},
            )
            rows = await cur.fetchall()
        return [
            ScoredKnowledgeEntry(
                id=row["id"], content=row["content"], similarity=float(row["similarity"])
            )
            for row in rows
        ]

    async def search_past_conversations(
        self,
        vector: Sequence[float],
        threshold: float,
        limit: int,
        exclude_slug: str | None = None,
    ) -> list[ScoredConversation]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT id, slug, 1 - (embedding <=> %(v)s) AS similarity
                FROM conversations
                WHERE status = 'closed' AND embedding IS NOT NULL
                  AND slug IS DISTINCT FROM %(exclude)s
                  AND 1 - (embedding <=> %(v)s) > %(threshold)s
                ORDER BY similarity DESC
                LIMIT %(limit)s
                """,
                {
                    "v": Vector(list(vector)),
                    "exclude": exclude_slug,
                    "threshold": threshold,
                    "limit": limit,
                },
            )
            rows = await cur.fetchall()
        return [
            ScoredConversation(
                id=row["id"], slug=row["slug"], similarity=float(row["similarity"])
            )
            for row in rows
        ]

    async def first_message_body(self, conversation_id: int) -> str | None:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT coalesce(cleaned_up_text, body) AS text
                FROM messages
                WHERE conversation_id = %s AND role = 'user'
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """,
                (conversation_id,),
            )
            row = await cur.fetchone()
        return row["text"] if row and row["text"] else None

    async def list_style_linters(self) -> list[StyleLinter]:
        async with self._connect() as conn:
            cur = await conn.execute(
                'SELECT "before", "after" FROM style_linters ORDER BY id ASC'
            )
            rows = await cur.fetchall()
        return [StyleLinter(before=row["before"], after=row["after"]) for row in rows]


@dataclass
class _StoredEntry:
    id: int
    content: str
    embedding: list[float]
    enabled: bool = True


@dataclass
class _StoredConversation:
    id: int
    slug: str
    embedding: list[float] | None
    first_message: str | None
    closed: bool = True


@dataclass
class InMemoryKnowledgeStore:
    """In-process store computing cosine similarity with numpy."""

    entries: list[_StoredEntry] = field(default_factory=list)
    conversations: list[_StoredConversation] = field(default_factory=list)
    style_linters: list[StyleLinter] = field(default_factory=list)

    def add_entry(
        self, content: str, embedding: Sequence[float], *, enabled: bool = True
    ) -> int:
        entry_id = len(self.entries) + 1
        self.entries.append(_StoredEntry(entry_id, content, list(embedding), enabled))
        return entry_id

    def add_conversation(
        self,
        slug: str,
        embedding: Sequence[float] | None,
        first_message: str | None,
        *,
        closed: bool = True,
    ) -> int:
        conversation_id = len(self.conversations) + 1
        self.conversations.append(
            _StoredConversation(
                conversation_id,
                slug,
                list(embedding) if embedding is not None else None,
                first_message,
                closed,
            )
        )
        return conversation_id

    def add_style_linter(self, before: str, after: str) -> None:
        self.style_linters.append(StyleLinter(before=before, after=after))

    async def search_knowledge_bank(
        self, vector: Sequence[float], threshold: float, limit: int
    ) -> list[ScoredKnowledgeEntry]:
        scored = [
            ScoredKnowledgeEntry(e.id, e.content, cosine_similarity(vector, e.embedding))
            for e in self.entries
            if e.enabled
        ]
        matches = [s for s in scored if s.similarity > threshold]
        matches.sort(key=lambda s: s.similarity, reverse=True)
        return matches[:limit]

    async def search_past_conversations(
        self,
        vector: Sequence[float],
        threshold: float,
        limit: int,
        exclude_slug: str | None = None,
    ) -> list[ScoredConversation]:
        scored = [
            ScoredConversation(c.id, c.slug, cosine_similarity(vector, c.embedding))
            for c in self.conversations
            if c.closed and c.embedding is not None and c.slug != exclude_slug
        ]
        matches = [s for s in scored if s.similarity > threshold]
        matches.sort(key=lambda s: s.similarity, reverse=True)
        return matches[:limit]

    async def first_message_body(self, conversation_id: int) -> str | None:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation.first_message
        return None

    async def list_style_linters(self) -> list[StyleLinter]:
        return list(self.style_linters)
