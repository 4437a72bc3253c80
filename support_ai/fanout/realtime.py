"""Realtime channels for conversation updates, exposed as Server-Sent Events.

Event format produced by :func:`format_sse`::

    event: conversation.message
    data: {"id": 12, ...}

Channels are named deterministically from the conversation slug so the widget
and the staff inbox can subscribe without extra lookups.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Any, Protocol

logger = logging.getLogger(__name__)

CONVERSATIONS_CHANNEL = "conversations"

MESSAGE_EVENT = "conversation.message"
NEW_CONVERSATION_EVENT = "conversation.new"
SUBJECT_EVENT = "conversation.subject"


def conversation_channel(slug: str) -> str:
    return f"conversation-{slug}"


def format_sse(event: str, data: Any) -> str:
    payload = json.dumps(data, default=str)
    return f"event: {event}\ndata: {payload}\n\n"


class RealtimePublisher(Protocol):
    async def publish(self, channel: str, event: str, data: dict[str, Any]) -> None: ...


class InMemoryRealtimeHub:
    """Fan events out to the subscribers of a channel within this process."""

    def __init__(self, *, max_queue_size: int = 100) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[tuple[str, dict[str, Any]]]]] = (
            defaultdict(set)
        )
        self._max_queue_size = max_queue_size

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def publish(self, channel: str, event: str, data: dict[str, Any]) -> None:
        for queue in list(self._subscribers.get(channel, ())):
            if queue.full():
                logger.warning("Dropping %s for slow subscriber on %s", event, channel)
                continue
            queue.put_nowait((event, data))

    async def subscribe(self, channel: str) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue(
            maxsize=self._max_queue_size
        )
        self._subscribers[channel].add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[channel].discard(queue)
            if not self._subscribers[channel]:
                del self._subscribers[channel]

    async def sse_stream(self, channel: str) -> AsyncIterator[str]:
        """Yield SSE-formatted events for ``channel`` until the client disconnects."""

        async for event, data in self.subscribe(channel):
            yield format_sse(event, data)
