"""Model-backed subject and summary generation for conversations."""

from __future__ import annotations

import logging

from ..agents.model import ModelClient
from ..agents.orchestrator import history_to_model_messages
from ..agents.prompts import PromptTemplateStore
from ..conversations.repository import ConversationNotFoundError, ConversationRepository
from ..conversations.schemas import Conversation, MessageRole

logger = logging.getLogger(__name__)

MAX_SUBJECT_LENGTH = 120


def parse_summary(text: str) -> list[str]:
    """Split a bulleted model answer into one string per bullet."""

    bullets: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        for marker in ("- ", "* ", "• "):
            if stripped.startswith(marker):
                stripped = stripped[len(marker):].strip()
                break
        if stripped:
            bullets.append(stripped)
    return bullets


def clean_subject(text: str) -> str:
    subject = " ".join(text.split()).strip("\"'").rstrip(".")
    return subject[:MAX_SUBJECT_LENGTH]


class _TranscriptGenerator:
    task = ""

    def __init__(
        self,
        model: ModelClient,
        repository: ConversationRepository,
        *,
        prompts: PromptTemplateStore | None = None,
    ) -> None:
        self._model = model
        self._repository = repository
        self._prompts = prompts or PromptTemplateStore()

    async def _load(self, conversation_id: int) -> Conversation:
        conversation = await self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    async def _complete(self, conversation_id: int) -> str | None:
        messages = [
            m
            for m in await self._repository.list_messages(conversation_id)
            if m.role is not MessageRole.TOOL
        ]
        if not messages:
            return None
        response = await self._model.complete(
            [
                {"role": "system", "content": self._prompts.resolve(self.task)},
                *history_to_model_messages(messages),
            ],
            task=self.task,
        )
        return response.text


class SubjectGenerator(_TranscriptGenerator):
    task = "subject"

    async def generate(self, conversation_id: int) -> str | None:
        conversation = await self._load(conversation_id)
        text = await self._complete(conversation.id)
        subject = clean_subject(text or "")
        if not subject:
            return None
        await self._repository.update_subject(conversation.id, subject)
        logger.info(
            "Updated conversation subject", extra={"conversation_slug": conversation.slug}
        )
        return subject


class SummaryGenerator(_TranscriptGenerator):
    task = "summary"

    async def generate(self, conversation_id: int) -> list[str]:
        conversation = await self._load(conversation_id)
        text = await self._complete(conversation.id)
        summary = parse_summary(text or "")
        if summary:
            await self._repository.update_summary(conversation.id, summary)
        return summary
