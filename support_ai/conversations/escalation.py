"""Detect and record handoffs of conversations from the AI to a human."""

from __future__ import annotations

import logging

from . import schemas
from .repository import ConversationRepository
from .schemas import EscalationTrigger, MessageRole

logger = logging.getLogger(__name__)


class EscalationPersistenceError(RuntimeError):
    """Raised when an escalation could not be stored.

    Callers must treat the conversation as not escalated and must not fall
    back to an AI reply for the turn.
    """


class EscalationDetector:
    """Apply the escalation transition for the three supported triggers.

    Escalating an already human-owned conversation is a no-op: no event is
    recorded and ``None`` is returned.
    """

    def __init__(self, repository: ConversationRepository) -> None:
        self._repository = repository

    async def escalate(
        self,
        conversation: schemas.Conversation,
        trigger: EscalationTrigger,
        *,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> schemas.EscalationEvent | None:
        # Ownership is decided against the stored row, not ``conversation``,
        # which may be stale after a long tool loop.
        try:
            stored = await self._repository.record_escalation(
                conversation.id, trigger, reason=reason, user_id=user_id
            )
        except Exception as exc:
            logger.exception(
                "Failed to record %s escalation",
                trigger.value,
                extra={"conversation_slug": conversation.slug},
            )
            raise EscalationPersistenceError(
                f"Could not escalate conversation {conversation.slug}"
            ) from exc
        if stored is None:
            logger.debug(
                "Conversation already human-owned; skipping %s escalation",
                trigger.value,
                extra={"conversation_slug": conversation.slug},
            )
            return None
        logger.info(
            "Conversation escalated to a human (%s)",
            trigger.value,
            extra={"conversation_slug": conversation.slug},
        )
        return stored

    async def on_staff_reply(
        self, conversation: schemas.Conversation, staff_user_id: str
    ) -> schemas.EscalationEvent | None:
        return await self.escalate(
            conversation,
            EscalationTrigger.HUMAN_REPLY,
            reason="Staff replied in the conversation",
            user_id=staff_user_id,
        )

    async def on_bad_flag(
        self,
        conversation: schemas.Conversation,
        message: schemas.Message,
        reason: str | None,
    ) -> schemas.EscalationEvent | None:
        """Flag ``message`` as bad and hand the conversation to a human.

        Only flags on assistant replies trigger the handoff; other messages are
        just marked.
        """

        await self._repository.flag_message(message.id, reason)
        if message.role is not MessageRole.AI_ASSISTANT:
            return None
        return await self.escalate(
            conversation, EscalationTrigger.BAD_FLAG, reason=reason
        )
