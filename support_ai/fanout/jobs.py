"""Background job types produced for each new conversation message."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class JobKind(str, enum.Enum):
    BROADCAST_MESSAGE = "broadcast_message"
    BROADCAST_CONVERSATION_LIST = "broadcast_conversation_list"
    GENERATE_SUBJECT = "generate_subject"
    GENERATE_SUMMARY = "generate_summary"
    CREATE_NOTIFICATION = "create_notification"


@dataclass(frozen=True)
class FanoutJob:
    """One side effect for one message.

    Jobs are identified by ``key``; a given kind runs at most once per message.
    """

    kind: JobKind
    message_id: int
    conversation_id: int
    payload: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    id: int | None = field(default=None, compare=False)

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.message_id}"
