"""Build the retrieval context injected into the assistant's system prompt.

Given an inbound customer query the assembler:

1. embeds the query through the shared :class:`CachedEmbedder`;
2. searches the knowledge bank and closed past conversations concurrently;
3. renders each non-empty source as its own section;
4. trims the lowest-similarity items until the prompt, including the
   conversation history, fits the model's context budget.

Retrieval is best-effort. A failing embedding provider yields an empty
context, and a failing source only empties its own section. The one hard
failure is :class:`PromptTooLongError`, raised when the system prompt and the
query alone exceed the budget.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import tiktoken

from ..config import EngineSettings, get_settings
from .embeddings import CachedEmbedder
from .store import KnowledgeStore, ScoredConversation, ScoredKnowledgeEntry, StyleLinter

logger = logging.getLogger(__name__)

KNOWLEDGE_BANK_HEADER = "## Knowledge bank"
PAST_CONVERSATIONS_HEADER = "## Past conversations"
STYLE_GUIDE_HEADER = "## Style guide"

KNOWLEDGE_BANK_INTRO = (
    "The following are information and instructions from our knowledge bank. "
    "Follow the instructions strictly and use the information to answer the "
    "customer's question when it is relevant."
)
PAST_CONVERSATIONS_INTRO = (
    "The following are similar conversations our team has already resolved. "
    "Use them as examples of how to answer."
)
STYLE_GUIDE_INTRO = (
    "Rewrite your answer the way each example below rewrites the 'before' text "
    "into the 'after' text."
)


class PromptTooLongError(RuntimeError):
    """Raised when the system prompt plus the query exceed the context budget."""

    def __init__(self, floor_tokens: int, budget: int):
        self.floor_tokens = floor_tokens
        self.budget = budget
        super().__init__(
            f"Prompt needs {floor_tokens} tokens before retrieval; budget is {budget}"
        )


class TokenCounter:
    """Count tokens with tiktoken; the encoding is loaded on first use."""

    def __init__(self, encoding_name: str = "cl100k_base") -> None:
        self._encoding_name = encoding_name
        self._encoder: tiktoken.Encoding | None = None

    def __call__(self, text: str) -> int:
        if not text:
            return 0
        if self._encoder is None:
            self._encoder = tiktoken.get_encoding(self._encoding_name)
        return len(self._encoder.encode(text, disallowed_special=()))


@dataclass
class RetrievalContext:
    text: str = ""
    knowledge_entries: list[ScoredKnowledgeEntry] = field(default_factory=list)
    past_conversations: list[ScoredConversation] = field(default_factory=list)
    style_linters: list[StyleLinter] = field(default_factory=list)
    dropped_items: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.text

    def prompt_info(self) -> dict[str, Any]:
        return {
            "knowledge_entries": [e.id for e in self.knowledge_entries],
            "past_conversations": [c.slug for c in self.past_conversations],
            "style_linters": len(self.style_linters),
            "dropped_items": self.dropped_items,
        }


def format_past_conversation(conversation: ScoredConversation) -> str:
    return (
        "--- Conversation Start ---\n"
        f"Customer: {conversation.first_message}\n"
        "--- Conversation End ---"
    )


def format_style_linter(linter: StyleLinter) -> str:
    return f"Before:\n{linter.before}\nAfter:\n{linter.after}"


def render_context(
    knowledge_entries: list[ScoredKnowledgeEntry],
    past_conversations: list[ScoredConversation],
    style_linters: list[StyleLinter],
) -> str:
    """Render the non-empty sections; returns ``""`` when every source is empty."""

    sections: list[str] = []
    if knowledge_entries:
        body = "\n\n".join(entry.content for entry in knowledge_entries)
        sections.append(f"{KNOWLEDGE_BANK_HEADER}\n{KNOWLEDGE_BANK_INTRO}\n\n{body}")
    if past_conversations:
        body = "\n\n".join(format_past_conversation(c) for c in past_conversations)
        sections.append(f"{PAST_CONVERSATIONS_HEADER}\n{PAST_CONVERSATIONS_INTRO}\n\n{body}")
    if style_linters:
        body = "\n\n".join(format_style_linter(linter) for linter in style_linters)
        sections.append(f"{STYLE_GUIDE_HEADER}\n{STYLE_GUIDE_INTRO}\n\n{body}")
    return "\n\n".join(sections)


class RetrievalAssembler:
    """Assemble knowledge-bank and past-conversation context for one query."""

    def __init__(
        self,
        embedder: CachedEmbedder,
        store: KnowledgeStore,
        *,
        settings: EngineSettings | None = None,
        token_counter: Callable[[str], int] | None = None,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._settings = settings or get_settings()
        self._count = token_counter or TokenCounter()

    # ------------------------------------------------------------------
    # Sources

    async def _knowledge_bank(self, vector: list[float]) -> list[ScoredKnowledgeEntry]:
        try:
            return await self._store.search_knowledge_bank(
                vector,
                self._settings.similarity_threshold,
                self._settings.max_knowledge_entries,
            )
        except Exception:
            logger.warning("Knowledge bank search failed", exc_info=True)
            return []

    async def _past_conversations(
        self, vector: list[float], exclude_slug: str | None
    ) -> list[ScoredConversation]:
        try:
            matches = await self._store.search_past_conversations(
                vector,
                self._settings.similarity_threshold,
                self._settings.max_past_conversations,
                exclude_slug=exclude_slug,
            )
            bodies = await asyncio.gather(
                *(self._store.first_message_body(match.id) for match in matches)
            )
        except Exception:
            logger.warning("Past conversation search failed", exc_info=True)
            return []
        return [
            ScoredConversation(
                id=match.id,
                slug=match.slug,
                similarity=match.similarity,
                first_message=body,
            )
            for match, body in zip(matches, bodies)
            if body
        ]

    async def _style_linters(self) -> list[StyleLinter]:
        try:
            return await self._store.list_style_linters()
        except Exception:
            logger.warning("Style linter lookup failed", exc_info=True)
            return []

    # ------------------------------------------------------------------
    # Assembly

    async def assemble(
        self,
        query: str,
        *,
        system_prompt: str,
        exclude_slug: str | None = None,
        history: Sequence[str] = (),
    ) -> RetrievalContext:
        """Return the context for ``query``.

        ``history`` holds the earlier turns sent along with the prompt. They
        do not count toward the floor, but they shrink the room left for
        retrieved items, which are dropped first when a conversation grows.
        """

        budget = self._settings.context_token_budget
        floor = self._count(system_prompt) + self._count(query)
        if floor > budget:
            raise PromptTooLongError(floor, budget)
        available = budget - floor - sum(self._count(text) for text in history)

        try:
            vector = await self._embedder.embed(query)
        except Exception:
            logger.warning("Query embedding failed; continuing without context", exc_info=True)
            return RetrievalContext()

        knowledge, past, linters = await asyncio.gather(
            self._knowledge_bank(vector),
            self._past_conversations(vector, exclude_slug),
            self._style_linters(),
        )
        return self._fit(knowledge, past, linters, available)

    def _fit(
        self,
        knowledge: list[ScoredKnowledgeEntry],
        past: list[ScoredConversation],
        linters: list[StyleLinter],
        available: int,
    ) -> RetrievalContext:
        knowledge = list(knowledge)
        past = list(past)
        linters = list(linters)
        dropped = 0
        text = render_context(knowledge, past, linters)
        while text and self._count(text) > available:
            if knowledge or past:
                lowest_kb = min(knowledge, key=lambda e: e.similarity, default=None)
                lowest_past = min(past, key=lambda c: c.similarity, default=None)
                if lowest_past is None or (
                    lowest_kb is not None and lowest_kb.similarity <= lowest_past.similarity
                ):
                    knowledge.remove(lowest_kb)
                else:
                    past.remove(lowest_past)
            else:
                linters.pop()
            dropped += 1
            text = render_context(knowledge, past, linters)
        if dropped:
            logger.info("Dropped %d retrieval items to fit the context budget", dropped)
        return RetrievalContext(
            text=text,
            knowledge_entries=knowledge,
            past_conversations=past,
            style_linters=linters,
            dropped_items=dropped,
        )
