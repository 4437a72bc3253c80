"""Persistence for conversations, messages, escalations and notifications."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Protocol

from psycopg.types.json import Jsonb

from ..config import PLACEHOLDER_SUBJECT
from ..db import PostgresStore
from . import schemas
from .state import ConversationState, escalate as escalate_state


class ConversationNotFoundError(RuntimeError):
    """Raised when a conversation cannot be located."""


class MessageNotFoundError(RuntimeError):
    """Raised when a message cannot be located within a conversation."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationRepository(Protocol):
    """Abstraction for persisting conversation artefacts."""

    async def create_conversation(
        self,
        slug: str,
        *,
        subject: str = PLACEHOLDER_SUBJECT,
        is_prompt: bool = False,
        customer_email: str | None = None,
    ) -> schemas.Conversation: ...

    async def get_conversation(self, conversation_id: int) -> schemas.Conversation | None: ...

    async def get_conversation_by_slug(self, slug: str) -> schemas.Conversation | None: ...

    async def update_state(
        self, conversation_id: int, state: ConversationState
    ) -> schemas.Conversation: ...

    async def record_escalation(
        self,
        conversation_id: int,
        trigger: schemas.EscalationTrigger,
        *,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> schemas.EscalationEvent | None:
        """Hand the conversation to a human, deciding against its stored state.

        Returns ``None`` without writing anything when the stored conversation
        is already human-owned.
        """

    async def list_escalation_events(
        self, conversation_id: int
    ) -> list[schemas.EscalationEvent]: ...

    async def update_subject(self, conversation_id: int, subject: str) -> None: ...

    async def update_summary(self, conversation_id: int, summary: list[str]) -> None: ...

    async def update_customer_email(
        self, conversation_id: int, customer_email: str
    ) -> schemas.Conversation: ...

    async def add_message(
        self, conversation_id: int, draft: schemas.MessageDraft
    ) -> schemas.Message: ...

    async def add_messages(
        self, conversation_id: int, drafts: Sequence[schemas.MessageDraft]
    ) -> list[schemas.Message]: ...

    async def get_message(self, message_id: int) -> schemas.Message | None: ...

    async def list_messages(self, conversation_id: int) -> list[schemas.Message]: ...

    async def count_messages(self, conversation_id: int) -> int: ...

    async def find_message_by_client_id(
        self, conversation_id: int, client_message_id: str
    ) -> schemas.Message | None: ...

    async def find_response(self, message_id: int) -> schemas.Message | None:
        """Return the latest reply or escalation acknowledgement for a user message."""

    async def flag_message(
        self, message_id: int, reason: str | None
    ) -> schemas.Message: ...

    async def create_notification(
        self, conversation_id: int, message_id: int, text: str
    ) -> schemas.Notification: ...


# ----------------------------------------------------------------------
# PostgreSQL


class PostgresConversationRepository(PostgresStore):
    """PostgreSQL implementation of :class:`ConversationRepository`."""

    _MESSAGE_COLUMNS = (
        "conversation_id, role, body, cleaned_up_text, client_message_id, "
        "response_to_id, tool_result, staff_user_id, created_at"
    )

    # Hydration -----------------------------------------------------------------
    @staticmethod
    def _hydrate_conversation(row: dict[str, Any]) -> schemas.Conversation:
        state = ConversationState.from_columns(
            status=row["status"],
            assigned_to_ai=row["assigned_to_ai"],
            assigned_to_user_id=row.get("assigned_to_user_id"),
            owner_before_close=row.get("owner_before_close"),
        )
        return schemas.Conversation(
            id=row["id"],
            slug=row["slug"],
            subject=row.get("subject") or PLACEHOLDER_SUBJECT,
            summary=row.get("summary") or [],
            state=state,
            is_prompt=row.get("is_prompt", False),
            customer_email=row.get("customer_email"),
            customer_last_read_at=row.get("customer_last_read_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _hydrate_message(row: dict[str, Any]) -> schemas.Message:
        return schemas.Message(**row)

    @staticmethod
    def _hydrate_event(row: dict[str, Any]) -> schemas.EscalationEvent:
        return schemas.EscalationEvent(**row)

    def _message_values(
        self, conversation_id: int, draft: schemas.MessageDraft
    ) -> tuple[Any, ...]:
        tool_result = (
            Jsonb(draft.tool_result.model_dump(mode="json"))
            if draft.tool_result is not None
            else None
        )
        return (
            conversation_id,
            draft.role.value,
            draft.body,
            draft.cleaned_up_text,
            draft.client_message_id,
            draft.response_to_id,
            tool_result,
            draft.staff_user_id,
            _utcnow(),
        )

    # Conversations ---------------------------------------------------------------
    async def create_conversation(
        self,
        slug: str,
        *,
        subject: str = PLACEHOLDER_SUBJECT,
        is_prompt: bool = False,
        customer_email: str | None = None,
    ) -> schemas.Conversation:
        columns = ConversationState().to_columns()
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                INSERT INTO conversations
                    (slug, subject, status, assigned_to_ai, assigned_to_user_id,
                     is_prompt, customer_email)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    slug,
                    subject,
                    columns["status"],
                    columns["assigned_to_ai"],
                    columns["assigned_to_user_id"],
                    is_prompt,
                    customer_email,
                ),
            )
            row = await cur.fetchone()
        return self._hydrate_conversation(row)

    async def get_conversation(self, conversation_id: int) -> schemas.Conversation | None:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM conversations WHERE id = %s", (conversation_id,)
            )
            row = await cur.fetchone()
        return self._hydrate_conversation(row) if row else None

    async def get_conversation_by_slug(self, slug: str) -> schemas.Conversation | None:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM conversations WHERE slug = %s", (slug,))
            row = await cur.fetchone()
        return self._hydrate_conversation(row) if row else None

    async def update_state(
        self, conversation_id: int, state: ConversationState
    ) -> schemas.Conversation:
        columns = state.to_columns()
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE conversations
                SET status = %s, assigned_to_ai = %s, assigned_to_user_id = %s,
                    owner_before_close = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (
                    columns["status"],
                    columns["assigned_to_ai"],
                    columns["assigned_to_user_id"],
                    Jsonb(columns["owner_before_close"])
                    if columns["owner_before_close"] is not None
                    else None,
                    conversation_id,
                ),
            )
            row = await cur.fetchone()
        if not row:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return self._hydrate_conversation(row)

    async def record_escalation(
        self,
        conversation_id: int,
        trigger: schemas.EscalationTrigger,
        *,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> schemas.EscalationEvent | None:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM conversations WHERE id = %s FOR UPDATE", (conversation_id,)
            )
            row = await cur.fetchone()
            if not row:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
            previous = self._hydrate_conversation(row).state
            new_state = escalate_state(previous, user_id=user_id)
            if new_state is None:
                return None
            columns = new_state.to_columns()
            cur = await conn.execute(
                """
                INSERT INTO escalation_events
                    (conversation_id, trigger, reason, previous_state, new_state, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    conversation_id,
                    trigger.value,
                    reason,
                    Jsonb(previous.model_dump(mode="json")),
                    Jsonb(new_state.model_dump(mode="json")),
                    _utcnow(),
                ),
            )
            event_row = await cur.fetchone()
            await conn.execute(
                """
                UPDATE conversations
                SET status = %s, assigned_to_ai = %s, assigned_to_user_id = %s,
                    owner_before_close = NULL, updated_at = now()
                WHERE id = %s
                """,
                (
                    columns["status"],
                    columns["assigned_to_ai"],
                    columns["assigned_to_user_id"],
                    conversation_id,
                ),
            )
        return self._hydrate_event(event_row)

    async def list_escalation_events(
        self, conversation_id: int
    ) -> list[schemas.EscalationEvent]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT * FROM escalation_events
                WHERE conversation_id = %s
                ORDER BY created_at ASC, id ASC
                """,
                (conversation_id,),
            )
            rows = await cur.fetchall()
        return [self._hydrate_event(row) for row in rows]

    async def update_subject(self, conversation_id: int, subject: str) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE conversations SET subject = %s, updated_at = now() WHERE id = %s",
                (subject, conversation_id),
            )

    async def update_summary(self, conversation_id: int, summary: list[str]) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE conversations SET summary = %s, updated_at = now() WHERE id = %s",
                (Jsonb(summary), conversation_id),
            )

    async def update_customer_email(
        self, conversation_id: int, customer_email: str
    ) -> schemas.Conversation:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE conversations SET customer_email = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (customer_email, conversation_id),
            )
            row = await cur.fetchone()
        if not row:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return self._hydrate_conversation(row)

    # Messages ---------------------------------------------------------------------
    async def add_message(
        self, conversation_id: int, draft: schemas.MessageDraft
    ) -> schemas.Message:
        (message,) = await self.add_messages(conversation_id, [draft])
        return message

    async def add_messages(
        self, conversation_id: int, drafts: Sequence[schemas.MessageDraft]
    ) -> list[schemas.Message]:
        stored: list[schemas.Message] = []
        async with self._connect() as conn:
            for draft in drafts:
                cur = await conn.execute(
                    f"""
                    INSERT INTO messages ({self._MESSAGE_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    self._message_values(conversation_id, draft),
                )
                stored.append(self._hydrate_message(await cur.fetchone()))
            await conn.execute(
                "UPDATE conversations SET updated_at = now() WHERE id = %s",
                (conversation_id,),
            )
        return stored

    async def get_message(self, message_id: int) -> schemas.Message | None:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM messages WHERE id = %s", (message_id,))
            row = await cur.fetchone()
        return self._hydrate_message(row) if row else None

    async def list_messages(self, conversation_id: int) -> list[schemas.Message]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = %s
                ORDER BY created_at ASC, id ASC
                """,
                (conversation_id,),
            )
            rows = await cur.fetchall()
        return [self._hydrate_message(row) for row in rows]

    async def count_messages(self, conversation_id: int) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT count(*) AS total FROM messages WHERE conversation_id = %s",
                (conversation_id,),
            )
            row = await cur.fetchone()
        return int(row["total"]) if row else 0

    async def find_message_by_client_id(
        self, conversation_id: int, client_message_id: str
    ) -> schemas.Message | None:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = %s AND client_message_id = %s AND role = 'user'
                LIMIT 1
                """,
                (conversation_id, client_message_id),
            )
            row = await cur.fetchone()
        return self._hydrate_message(row) if row else None

    async def find_response(self, message_id: int) -> schemas.Message | None:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT * FROM messages
                WHERE response_to_id = %s AND role IN ('ai_assistant', 'tool')
                ORDER BY id DESC
                LIMIT 1
                """,
                (message_id,),
            )
            row = await cur.fetchone()
        return self._hydrate_message(row) if row else None

    async def flag_message(
        self, message_id: int, reason: str | None
    ) -> schemas.Message:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE messages SET is_flagged_as_bad = true, reason = %s
                WHERE id = %s
                RETURNING *
                """,
                (reason, message_id),
            )
            row = await cur.fetchone()
        if not row:
            raise MessageNotFoundError(f"Message {message_id} not found")
        return self._hydrate_message(row)

    async def create_notification(
        self, conversation_id: int, message_id: int, text: str
    ) -> schemas.Notification:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                INSERT INTO notifications (conversation_id, message_id, text)
                VALUES (%s, %s, %s)
                ON CONFLICT (message_id) DO UPDATE SET text = EXCLUDED.text
                RETURNING *
                """,
                (conversation_id, message_id, text),
            )
            row = await cur.fetchone()
        return schemas.Notification(**row)


# ----------------------------------------------------------------------
# In-memory


class InMemoryConversationRepository:
    """In-memory repository useful for tests and sandbox environments."""

    def __init__(self) -> None:
        self.conversations: dict[int, schemas.Conversation] = {}
        self.messages: dict[int, schemas.Message] = {}
        self.escalation_events: list[schemas.EscalationEvent] = []
        self.notifications: dict[int, schemas.Notification] = {}
        self._conversation_seq = 1
        self._message_seq = 1
        self._event_seq = 1
        self._notification_seq = 1

    def _require(self, conversation_id: int) -> schemas.Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def _touch(self, conversation_id: int, **updates: Any) -> schemas.Conversation:
        conversation = self._require(conversation_id)
        updated = conversation.model_copy(update={**updates, "updated_at": _utcnow()})
        self.conversations[conversation_id] = updated
        return updated

    # Conversations ---------------------------------------------------------------
    async def create_conversation(
        self,
        slug: str,
        *,
        subject: str = PLACEHOLDER_SUBJECT,
        is_prompt: bool = False,
        customer_email: str | None = None,
    ) -> schemas.Conversation:
        now = _utcnow()
        conversation = schemas.Conversation(
            id=self._conversation_seq,
            slug=slug,
            subject=subject,
            is_prompt=is_prompt,
            customer_email=customer_email,
            created_at=now,
            updated_at=now,
        )
        self.conversations[conversation.id] = conversation
        self._conversation_seq += 1
        return conversation

    async def get_conversation(self, conversation_id: int) -> schemas.Conversation | None:
        return self.conversations.get(conversation_id)

    async def get_conversation_by_slug(self, slug: str) -> schemas.Conversation | None:
        for conversation in self.conversations.values():
            if conversation.slug == slug:
                return conversation
        return None

    async def update_state(
        self, conversation_id: int, state: ConversationState
    ) -> schemas.Conversation:
        return self._touch(conversation_id, state=state)

    async def record_escalation(
        self,
        conversation_id: int,
        trigger: schemas.EscalationTrigger,
        *,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> schemas.EscalationEvent | None:
        previous = self._require(conversation_id).state
        new_state = escalate_state(previous, user_id=user_id)
        if new_state is None:
            return None
        event = schemas.EscalationEvent(
            id=self._event_seq,
            conversation_id=conversation_id,
            trigger=trigger,
            reason=reason,
            previous_state=previous,
            new_state=new_state,
            created_at=_utcnow(),
        )
        self._event_seq += 1
        self.escalation_events.append(event)
        self._touch(conversation_id, state=new_state)
        return event

    async def list_escalation_events(
        self, conversation_id: int
    ) -> list[schemas.EscalationEvent]:
        return [e for e in self.escalation_events if e.conversation_id == conversation_id]

    async def update_subject(self, conversation_id: int, subject: str) -> None:
        self._touch(conversation_id, subject=subject)

    async def update_summary(self, conversation_id: int, summary: list[str]) -> None:
        self._touch(conversation_id, summary=list(summary))

    async def update_customer_email(
        self, conversation_id: int, customer_email: str
    ) -> schemas.Conversation:
        return self._touch(conversation_id, customer_email=customer_email)

    # Messages ---------------------------------------------------------------------
    async def add_message(
        self, conversation_id: int, draft: schemas.MessageDraft
    ) -> schemas.Message:
        (message,) = await self.add_messages(conversation_id, [draft])
        return message

    async def add_messages(
        self, conversation_id: int, drafts: Sequence[schemas.MessageDraft]
    ) -> list[schemas.Message]:
        self._require(conversation_id)
        stored: list[schemas.Message] = []
        for draft in drafts:
            message = schemas.Message(
                id=self._message_seq,
                conversation_id=conversation_id,
                created_at=_utcnow(),
                **draft.model_dump(),
            )
            self._message_seq += 1
            self.messages[message.id] = message
            stored.append(message)
        self._touch(conversation_id)
        return stored

    async def get_message(self, message_id: int) -> schemas.Message | None:
        return self.messages.get(message_id)

    async def list_messages(self, conversation_id: int) -> list[schemas.Message]:
        return sorted(
            (m for m in self.messages.values() if m.conversation_id == conversation_id),
            key=lambda m: m.id,
        )

    async def count_messages(self, conversation_id: int) -> int:
        return sum(1 for m in self.messages.values() if m.conversation_id == conversation_id)

    async def find_message_by_client_id(
        self, conversation_id: int, client_message_id: str
    ) -> schemas.Message | None:
        for message in self.messages.values():
            if (
                message.conversation_id == conversation_id
                and message.client_message_id == client_message_id
                and message.role is schemas.MessageRole.USER
            ):
                return message
        return None

    async def find_response(self, message_id: int) -> schemas.Message | None:
        responses = [
            m
            for m in self.messages.values()
            if m.response_to_id == message_id
            and m.role in (schemas.MessageRole.AI_ASSISTANT, schemas.MessageRole.TOOL)
        ]
        return max(responses, key=lambda m: m.id) if responses else None

    async def flag_message(
        self, message_id: int, reason: str | None
    ) -> schemas.Message:
        message = self.messages.get(message_id)
        if message is None:
            raise MessageNotFoundError(f"Message {message_id} not found")
        flagged = message.model_copy(update={"is_flagged_as_bad": True, "reason": reason})
        self.messages[message_id] = flagged
        return flagged

    async def create_notification(
        self, conversation_id: int, message_id: int, text: str
    ) -> schemas.Notification:
        existing = self.notifications.get(message_id)
        notification = schemas.Notification(
            id=existing.id if existing else self._notification_seq,
            conversation_id=conversation_id,
            message_id=message_id,
            text=text,
            created_at=_utcnow(),
        )
        if existing is None:
            self._notification_seq += 1
        self.notifications[message_id] = notification
        return notification
