"""Conversation records, ownership state and escalation handling."""

from . import schemas
from .state import ConversationState, ConversationStatus, IllegalTransitionError

__all__ = [
    "ConversationState",
    "ConversationStatus",
    "IllegalTransitionError",
    "schemas",
]
