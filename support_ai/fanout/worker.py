"""Background worker that drains the fanout queue.

Each job is handled in isolation. A failing handler is logged and recorded on
the job; it neither stops the worker nor affects other jobs for the same
message.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping

from ..conversations.repository import ConversationRepository
from .generators import SubjectGenerator, SummaryGenerator
from .jobs import FanoutJob, JobKind
from .queue import JobQueue
from .realtime import (
    CONVERSATIONS_CHANNEL,
    MESSAGE_EVENT,
    NEW_CONVERSATION_EVENT,
    SUBJECT_EVENT,
    RealtimePublisher,
    conversation_channel,
)

logger = logging.getLogger(__name__)

Handler = Callable[[FanoutJob], Awaitable[None]]


class FanoutHandlers:
    """Job handlers wired to the realtime hub, generators and repository."""

    def __init__(
        self,
        repository: ConversationRepository,
        publisher: RealtimePublisher,
        subjects: SubjectGenerator,
        summaries: SummaryGenerator,
    ) -> None:
        self._repository = repository
        self._publisher = publisher
        self._subjects = subjects
        self._summaries = summaries

    def as_mapping(self) -> dict[JobKind, Handler]:
        return {
            JobKind.BROADCAST_MESSAGE: self.broadcast_message,
            JobKind.BROADCAST_CONVERSATION_LIST: self.broadcast_conversation_list,
            JobKind.GENERATE_SUBJECT: self.generate_subject,
            JobKind.GENERATE_SUMMARY: self.generate_summary,
            JobKind.CREATE_NOTIFICATION: self.create_notification,
        }

    async def broadcast_message(self, job: FanoutJob) -> None:
        slug = job.payload["conversation_slug"]
        await self._publisher.publish(
            conversation_channel(slug), MESSAGE_EVENT, job.payload["message"]
        )

    async def broadcast_conversation_list(self, job: FanoutJob) -> None:
        await self._publisher.publish(CONVERSATIONS_CHANNEL, NEW_CONVERSATION_EVENT, job.payload)

    async def generate_subject(self, job: FanoutJob) -> None:
        subject = await self._subjects.generate(job.conversation_id)
        if subject:
            slug = job.payload["conversation_slug"]
            await self._publisher.publish(
                conversation_channel(slug), SUBJECT_EVENT, {"subject": subject}
            )

    async def generate_summary(self, job: FanoutJob) -> None:
        await self._summaries.generate(job.conversation_id)

    async def create_notification(self, job: FanoutJob) -> None:
        await self._repository.create_notification(
            job.conversation_id, job.message_id, job.payload["text"]
        )


class FanoutWorker:
    def __init__(
        self,
        queue: JobQueue,
        handlers: Mapping[JobKind, Handler],
        *,
        batch_size: int = 20,
        poll_interval: float = 1.0,
    ) -> None:
        self._queue = queue
        self._handlers = dict(handlers)
        self._batch_size = batch_size
        self._poll_interval = poll_interval
        self._stopping = asyncio.Event()

    async def _process(self, job: FanoutJob) -> bool:
        extra = {"job_key": job.key, "message_id": job.message_id}
        handler = self._handlers.get(job.kind)
        if handler is None:
            logger.error("No handler registered for %s", job.kind.value, extra=extra)
            await self._queue.mark_done(job, error="no handler")
            return False
        try:
            await handler(job)
        except Exception as exc:
            logger.exception("Fanout job %s failed", job.key, extra=extra)
            await self._queue.mark_done(job, error=f"{type(exc).__name__}: {exc}")
            return False
        await self._queue.mark_done(job)
        return True

    async def drain_once(self) -> int:
        """Process whatever is queued right now; returns the number of jobs seen."""

        processed = 0
        while True:
            batch = await self._queue.next_batch(self._batch_size, timeout=0)
            if not batch:
                return processed
            for job in batch:
                await self._process(job)
            processed += len(batch)

    async def run(self) -> None:
        logger.info("Fanout worker started")
        while not self._stopping.is_set():
            try:
                batch = await self._queue.next_batch(
                    self._batch_size, timeout=self._poll_interval
                )
            except Exception:
                logger.exception("Fanout queue read failed")
                await asyncio.sleep(self._poll_interval)
                continue
            for job in batch:
                await self._process(job)
        logger.info("Fanout worker stopped")

    def stop(self) -> None:
        self._stopping.set()
