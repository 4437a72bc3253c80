"""Decide which side effects a new message triggers and enqueue them.

Publishing only writes jobs to the queue; the work itself happens in the
:class:`~support_ai.fanout.worker.FanoutWorker`, so a slow subject model or a
broken notification store never delays the customer's reply.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..config import EngineSettings, get_settings
from ..conversations.schemas import Conversation, Message, MessageRole
from .jobs import FanoutJob, JobKind
from .queue import JobQueue

logger = logging.getLogger(__name__)

NOTIFICATION_TEMPLATE = "You have a new reply for {subject}"


@dataclass
class FanoutEvent:
    """Everything the predicates need about one processed message.

    ``message`` is the message the event is about: the assistant or staff
    reply, or the escalation acknowledgement, when there is one, otherwise the
    customer's message. ``new_messages`` lists every message created by the
    turn that subscribers should see; tool messages among them are only
    broadcast when they are ``message``.
    """

    conversation: Conversation
    message: Message
    new_messages: list[Message] = field(default_factory=list)
    opened_by_customer: bool = False
    escalated: bool = False
    message_count: int = 0
    first_user_message: str | None = None
    is_first_user_message: bool = False


def should_broadcast_list(event: FanoutEvent) -> bool:
    return event.opened_by_customer and event.conversation.state.is_open


def should_regenerate_subject(event: FanoutEvent, settings: EngineSettings) -> bool:
    conversation = event.conversation
    if event.escalated:
        return True
    if conversation.subject == settings.placeholder_subject:
        return True
    return (
        conversation.is_prompt
        and not event.is_first_user_message
        and event.first_user_message is not None
        and conversation.subject == event.first_user_message
    )


def should_summarize(event: FanoutEvent, settings: EngineSettings) -> bool:
    return event.message_count > settings.summary_min_messages


def should_notify(event: FanoutEvent) -> bool:
    message = event.message
    if message.role not in (MessageRole.AI_ASSISTANT, MessageRole.STAFF):
        return False
    conversation = event.conversation
    if not conversation.customer_email:
        return False
    last_read = conversation.customer_last_read_at
    return last_read is None or last_read < message.created_at


def _message_payload(conversation: Conversation, message: Message) -> dict:
    return {
        "conversation_slug": conversation.slug,
        "message": message.model_dump(mode="json", exclude={"tool_result"}),
    }


class EventFanout:
    """Turn a :class:`FanoutEvent` into idempotent background jobs."""

    def __init__(self, queue: JobQueue, *, settings: EngineSettings | None = None):
        self._queue = queue
        self._settings = settings or get_settings()

    def plan(self, event: FanoutEvent) -> list[FanoutJob]:
        conversation = event.conversation
        message = event.message
        base = {"conversation_slug": conversation.slug}

        jobs = [
            FanoutJob(
                kind=JobKind.BROADCAST_MESSAGE,
                message_id=m.id,
                conversation_id=conversation.id,
                payload=_message_payload(conversation, m),
            )
            for m in (event.new_messages or [message])
            if m.role is not MessageRole.TOOL or m.id == message.id
        ]

        def _job(kind: JobKind, **payload) -> FanoutJob:
            return FanoutJob(
                kind=kind,
                message_id=message.id,
                conversation_id=conversation.id,
                payload={**base, **payload},
            )

        if should_broadcast_list(event):
            jobs.append(
                _job(
                    JobKind.BROADCAST_CONVERSATION_LIST,
                    subject=conversation.subject,
                    status=conversation.state.status.value,
                )
            )
        if should_regenerate_subject(event, self._settings):
            jobs.append(_job(JobKind.GENERATE_SUBJECT))
        if should_summarize(event, self._settings):
            jobs.append(_job(JobKind.GENERATE_SUMMARY))
        if should_notify(event):
            jobs.append(
                _job(
                    JobKind.CREATE_NOTIFICATION,
                    text=NOTIFICATION_TEMPLATE.format(subject=conversation.subject),
                )
            )
        return jobs

    async def publish(self, event: FanoutEvent) -> list[FanoutJob]:
        """Enqueue the jobs for ``event``; returns only the newly enqueued ones."""

        enqueued: list[FanoutJob] = []
        for job in self.plan(event):
            try:
                if await self._queue.enqueue(job):
                    enqueued.append(job)
            except Exception:
                logger.exception(
                    "Failed to enqueue fanout job",
                    extra={"job_key": job.key, "conversation_slug": event.conversation.slug},
                )
        return enqueued
