"""Idempotent background side effects for new conversation messages."""

from .events import EventFanout, FanoutEvent
from .jobs import FanoutJob, JobKind
from .queue import InMemoryJobQueue, JobQueue, PostgresJobOutbox
from .realtime import InMemoryRealtimeHub, conversation_channel
from .worker import FanoutHandlers, FanoutWorker

__all__ = [
    "EventFanout",
    "FanoutEvent",
    "FanoutHandlers",
    "FanoutJob",
    "FanoutWorker",
    "InMemoryJobQueue",
    "InMemoryRealtimeHub",
    "JobKind",
    "JobQueue",
    "PostgresJobOutbox",
    "conversation_channel",
]
