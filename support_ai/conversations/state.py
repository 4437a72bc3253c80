"""Conversation ownership and status transitions.

A conversation is owned by exactly one party at a time: the AI or a human
(optionally a specific staff member). Ownership is a single tagged value, so a
conversation cannot be AI-owned and assigned to a user simultaneously.

All transitions are pure functions over :class:`ConversationState`. They
return the new state, or ``None`` when the requested change is already in
effect, and raise :class:`IllegalTransitionError` when the change is not
allowed from the current state.
"""

from __future__ import annotations

import enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class IllegalTransitionError(RuntimeError):
    """Raised when a status or ownership change is not allowed."""


class ConversationStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    SPAM = "spam"


class AIOwner(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["ai"] = "ai"


class HumanOwner(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["human"] = "human"
    user_id: str | None = None


Owner = Annotated[Union[AIOwner, HumanOwner], Field(discriminator="kind")]
_OWNER_ADAPTER: TypeAdapter[AIOwner | HumanOwner] = TypeAdapter(Owner)


def owner_from_json(data: dict[str, Any] | None) -> AIOwner | HumanOwner | None:
    if not data:
        return None
    return _OWNER_ADAPTER.validate_python(data)


class ConversationState(BaseModel):
    """Status plus the single current owner of a conversation."""

    model_config = ConfigDict(frozen=True)

    status: ConversationStatus = ConversationStatus.OPEN
    owner: Owner = Field(default_factory=AIOwner)
    owner_before_close: Optional[Owner] = None

    @property
    def is_ai_owned(self) -> bool:
        return isinstance(self.owner, AIOwner)

    @property
    def is_open(self) -> bool:
        return self.status is ConversationStatus.OPEN

    def to_columns(self) -> dict[str, Any]:
        """Flatten into the ``conversations`` table columns."""

        return {
            "status": self.status.value,
            "assigned_to_ai": self.is_ai_owned,
            "assigned_to_user_id": (
                None if isinstance(self.owner, AIOwner) else self.owner.user_id
            ),
            "owner_before_close": (
                self.owner_before_close.model_dump()
                if self.owner_before_close is not None
                else None
            ),
        }

    @classmethod
    def from_columns(
        cls,
        *,
        status: str,
        assigned_to_ai: bool,
        assigned_to_user_id: str | None,
        owner_before_close: dict[str, Any] | None = None,
    ) -> "ConversationState":
        # A stored row with both flags set is resolved toward the human owner.
        owner: AIOwner | HumanOwner
        if assigned_to_ai and not assigned_to_user_id:
            owner = AIOwner()
        else:
            owner = HumanOwner(user_id=assigned_to_user_id)
        return cls(
            status=ConversationStatus(status),
            owner=owner,
            owner_before_close=owner_from_json(owner_before_close),
        )


def escalate(
    state: ConversationState, user_id: str | None = None
) -> ConversationState | None:
    """Hand an AI-owned conversation to a human. No-op when already human-owned."""

    if not state.is_ai_owned:
        return None
    return ConversationState(
        status=ConversationStatus.OPEN,
        owner=HumanOwner(user_id=user_id),
        owner_before_close=None,
    )


def auto_close(state: ConversationState) -> ConversationState | None:
    """Close an open AI-owned conversation after the AI resolved it."""

    if not state.is_ai_owned:
        raise IllegalTransitionError(
            "Only AI-owned conversations can be closed automatically"
        )
    if state.status is ConversationStatus.CLOSED:
        return None
    if state.status is not ConversationStatus.OPEN:
        raise IllegalTransitionError(
            f"Cannot auto-close a conversation in status {state.status.value}"
        )
    return state.model_copy(
        update={"status": ConversationStatus.CLOSED, "owner_before_close": state.owner}
    )


def _operator_status(
    state: ConversationState, target: ConversationStatus
) -> ConversationState | None:
    if state.status is target:
        return None
    if state.status is not ConversationStatus.OPEN:
        raise IllegalTransitionError(
            f"Cannot move a {state.status.value} conversation to {target.value}; reopen it first"
        )
    return state.model_copy(update={"status": target, "owner_before_close": state.owner})


def close(state: ConversationState) -> ConversationState | None:
    return _operator_status(state, ConversationStatus.CLOSED)


def mark_spam(state: ConversationState) -> ConversationState | None:
    return _operator_status(state, ConversationStatus.SPAM)


def reopen(state: ConversationState) -> ConversationState | None:
    """Reopen a closed or spam conversation.

    The owner recorded when the conversation was closed is restored. Without
    that record the conversation goes to the human queue.
    """

    if state.is_open:
        return None
    owner = state.owner_before_close or HumanOwner()
    return ConversationState(
        status=ConversationStatus.OPEN, owner=owner, owner_before_close=None
    )
