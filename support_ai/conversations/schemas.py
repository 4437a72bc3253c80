"""Pydantic schemas for conversations, messages and the chat API."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ..config import PLACEHOLDER_SUBJECT
from ..tools.schemas import ToolInvocationResult
from .state import ConversationState, ConversationStatus


class MessageRole(str, enum.Enum):
    USER = "user"
    AI_ASSISTANT = "ai_assistant"
    STAFF = "staff"
    TOOL = "tool"


class EscalationTrigger(str, enum.Enum):
    EXPLICIT_TOOL_CALL = "explicit_tool_call"
    HUMAN_REPLY = "human_reply"
    BAD_FLAG = "bad_flag"


class Conversation(BaseModel):
    id: int
    slug: str
    subject: str = PLACEHOLDER_SUBJECT
    summary: list[str] = Field(default_factory=list)
    state: ConversationState = Field(default_factory=ConversationState)
    is_prompt: bool = False
    customer_email: str | None = None
    customer_last_read_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def status(self) -> ConversationStatus:
        return self.state.status


class Message(BaseModel):
    id: int
    conversation_id: int
    role: MessageRole
    body: str = ""
    cleaned_up_text: str | None = None
    client_message_id: str | None = None
    response_to_id: int | None = None
    tool_result: ToolInvocationResult | None = None
    staff_user_id: str | None = None
    is_flagged_as_bad: bool = False
    reason: str | None = None
    created_at: datetime


class MessageDraft(BaseModel):
    """A message that has not been persisted yet."""

    role: MessageRole
    body: str = ""
    cleaned_up_text: str | None = None
    client_message_id: str | None = None
    response_to_id: int | None = None
    tool_result: ToolInvocationResult | None = None
    staff_user_id: str | None = None


class EscalationEvent(BaseModel):
    id: int | None = None
    conversation_id: int
    trigger: EscalationTrigger
    reason: str | None = None
    previous_state: ConversationState
    new_state: ConversationState
    created_at: datetime


class Notification(BaseModel):
    id: int
    conversation_id: int
    message_id: int
    text: str
    created_at: datetime


# ----------------------------------------------------------------------
# Chat API payloads

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateConversationRequest(_CamelModel):
    customer_email: str | None = Field(default=None, alias="customerEmail")
    is_prompt: bool = Field(default=False, alias="isPrompt")


class CreateConversationResponse(_CamelModel):
    conversation_slug: str = Field(alias="conversationSlug")


class ChatRequest(_CamelModel):
    conversation_slug: str = Field(alias="conversationSlug")
    message: str = Field(min_length=1, max_length=5000)
    client_message_id: str | None = Field(
        default=None, alias="clientMessageId", max_length=128
    )
    customer_email: str | None = Field(default=None, alias="customerEmail")


ReplyKind = Literal["reply", "escalated", "fallback", "acknowledged", "no_action"]


class ChatReply(_CamelModel):
    conversation_slug: str = Field(alias="conversationSlug")
    kind: ReplyKind
    text: str | None = None
    message_id: int | None = Field(default=None, alias="messageId")
    escalated: bool = False


class StaffReplyRequest(BaseModel):
    staff_user_id: str
    body: str = Field(min_length=1)


class FlagRequest(BaseModel):
    reason: str | None = None


class StatusRequest(BaseModel):
    action: Literal["close", "spam", "reopen"]


class ConversationView(BaseModel):
    slug: str
    subject: str
    summary: list[str]
    status: ConversationStatus
    assigned_to_ai: bool
    assigned_to_user_id: str | None = None
    messages: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def build(
        cls, conversation: Conversation, messages: list[Message]
    ) -> "ConversationView":
        columns = conversation.state.to_columns()
        return cls(
            slug=conversation.slug,
            subject=conversation.subject,
            summary=conversation.summary,
            status=conversation.state.status,
            assigned_to_ai=columns["assigned_to_ai"],
            assigned_to_user_id=columns["assigned_to_user_id"],
            messages=[
                message.model_dump(mode="json", exclude={"tool_result"})
                for message in messages
                if message.role is not MessageRole.TOOL
            ],
        )
