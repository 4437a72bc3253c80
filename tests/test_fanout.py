import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from support_ai.config import EngineSettings
from support_ai.conversations.repository import InMemoryConversationRepository
from support_ai.conversations.schemas import MessageDraft, MessageRole
from support_ai.fanout.events import (
    EventFanout,
    FanoutEvent,
    should_broadcast_list,
    should_notify,
    should_regenerate_subject,
    should_summarize,
)
from support_ai.fanout.generators import (
    SubjectGenerator,
    SummaryGenerator,
    clean_subject,
    parse_summary,
)
from support_ai.fanout.jobs import FanoutJob, JobKind
from support_ai.fanout.queue import InMemoryJobQueue, PostgresJobOutbox
from support_ai.fanout.realtime import (
    MESSAGE_EVENT,
    InMemoryRealtimeHub,
    conversation_channel,
    format_sse,
)
from support_ai.fanout.worker import FanoutHandlers, FanoutWorker

from conftest import ScriptedModel

SETTINGS = EngineSettings(summary_min_messages=4)


async def _conversation(repo, **kwargs):
    conversation = await repo.create_conversation("abc", **kwargs)
    user = await repo.add_message(
        conversation.id, MessageDraft(role=MessageRole.USER, body="Where is my parcel?")
    )
    reply = await repo.add_message(
        conversation.id,
        MessageDraft(
            role=MessageRole.AI_ASSISTANT, body="It ships today.", response_to_id=user.id
        ),
    )
    return await repo.get_conversation(conversation.id), user, reply


def _event(conversation, message, **kwargs) -> FanoutEvent:
    return FanoutEvent(conversation=conversation, message=message, **kwargs)


# ----------------------------------------------------------------------
# Predicates


@pytest.mark.asyncio
async def test_list_broadcast_only_for_customer_opened_conversations():
    repo = InMemoryConversationRepository()
    conversation, user, _ = await _conversation(repo)

    assert should_broadcast_list(_event(conversation, user, opened_by_customer=True))
    assert not should_broadcast_list(_event(conversation, user))


@pytest.mark.asyncio
async def test_subject_regenerates_for_placeholder_or_escalation():
    repo = InMemoryConversationRepository()
    conversation, user, _ = await _conversation(repo)
    named = conversation.model_copy(update={"subject": "Parcel delay"})

    assert should_regenerate_subject(_event(conversation, user), SETTINGS)
    assert not should_regenerate_subject(_event(named, user), SETTINGS)
    assert should_regenerate_subject(_event(named, user, escalated=True), SETTINGS)


@pytest.mark.asyncio
async def test_prompt_conversation_subject_regenerates_after_the_first_message():
    repo = InMemoryConversationRepository()
    conversation, user, _ = await _conversation(
        repo, subject="Where is my parcel?", is_prompt=True
    )

    first = _event(
        conversation,
        user,
        first_user_message="Where is my parcel?",
        is_first_user_message=True,
    )
    later = _event(
        conversation,
        user,
        first_user_message="Where is my parcel?",
        is_first_user_message=False,
    )

    assert not should_regenerate_subject(first, SETTINGS)
    assert should_regenerate_subject(later, SETTINGS)


@pytest.mark.asyncio
async def test_summary_needs_more_than_the_minimum_messages():
    repo = InMemoryConversationRepository()
    conversation, user, _ = await _conversation(repo)

    assert not should_summarize(_event(conversation, user, message_count=4), SETTINGS)
    assert should_summarize(_event(conversation, user, message_count=5), SETTINGS)


@pytest.mark.asyncio
async def test_notifications_for_unread_replies_with_an_email():
    repo = InMemoryConversationRepository()
    conversation, user, reply = await _conversation(repo, customer_email="a@example.com")

    assert should_notify(_event(conversation, reply))
    assert not should_notify(_event(conversation, user))

    read = conversation.model_copy(
        update={"customer_last_read_at": reply.created_at + timedelta(seconds=1)}
    )
    assert not should_notify(_event(read, reply))

    anonymous = conversation.model_copy(update={"customer_email": None})
    assert not should_notify(_event(anonymous, reply))


# ----------------------------------------------------------------------
# Publishing


@pytest.mark.asyncio
async def test_publishing_twice_enqueues_each_job_once():
    repo = InMemoryConversationRepository()
    conversation, user, reply = await _conversation(repo, customer_email="a@example.com")
    queue = InMemoryJobQueue()
    fanout = EventFanout(queue, settings=SETTINGS)
    event = _event(
        conversation,
        reply,
        new_messages=[user, reply],
        opened_by_customer=True,
        message_count=2,
    )

    first = await fanout.publish(event)
    second = await fanout.publish(event)

    assert {job.kind for job in first} == {
        JobKind.BROADCAST_MESSAGE,
        JobKind.BROADCAST_CONVERSATION_LIST,
        JobKind.GENERATE_SUBJECT,
        JobKind.CREATE_NOTIFICATION,
    }
    assert len([j for j in first if j.kind is JobKind.BROADCAST_MESSAGE]) == 2
    assert second == []
    assert len(queue) == len(first)

    notification = next(j for j in first if j.kind is JobKind.CREATE_NOTIFICATION)
    assert notification.payload["text"] == "You have a new reply for Chat"


@pytest.mark.asyncio
async def test_tool_messages_are_not_broadcast():
    repo = InMemoryConversationRepository()
    conversation, user, reply = await _conversation(repo)
    tool_message = user.model_copy(update={"id": 99, "role": MessageRole.TOOL})
    fanout = EventFanout(InMemoryJobQueue(), settings=SETTINGS)

    jobs = fanout.plan(_event(conversation, reply, new_messages=[user, tool_message, reply]))

    broadcast_ids = [j.message_id for j in jobs if j.kind is JobKind.BROADCAST_MESSAGE]
    assert broadcast_ids == [user.id, reply.id]


@pytest.mark.asyncio
async def test_enqueue_failures_do_not_raise():
    class BrokenQueue(InMemoryJobQueue):
        async def enqueue(self, job):
            raise ConnectionError("outbox down")

    repo = InMemoryConversationRepository()
    conversation, _, reply = await _conversation(repo)

    assert await EventFanout(BrokenQueue(), settings=SETTINGS).publish(
        _event(conversation, reply)
    ) == []


# ----------------------------------------------------------------------
# Worker


@pytest.mark.asyncio
async def test_worker_isolates_failing_jobs():
    queue = InMemoryJobQueue()
    handled: list[str] = []

    async def ok(job):
        handled.append(job.key)

    async def broken(job):
        raise ValueError("subject model exploded")

    worker = FanoutWorker(
        queue, {JobKind.BROADCAST_MESSAGE: ok, JobKind.GENERATE_SUBJECT: broken}
    )
    await queue.enqueue(FanoutJob(JobKind.GENERATE_SUBJECT, message_id=1, conversation_id=1))
    await queue.enqueue(FanoutJob(JobKind.BROADCAST_MESSAGE, message_id=1, conversation_id=1))
    await queue.enqueue(FanoutJob(JobKind.GENERATE_SUMMARY, message_id=1, conversation_id=1))

    assert await worker.drain_once() == 3

    assert handled == ["broadcast_message:1"]
    assert [job.key for job in queue.completed] == ["broadcast_message:1"]
    errors = dict((job.key, error) for job, error in queue.failed)
    assert errors["generate_subject:1"] == "ValueError: subject model exploded"
    assert errors["generate_summary:1"] == "no handler"


@pytest.mark.asyncio
async def test_handlers_update_the_conversation_and_notify_subscribers():
    repo = InMemoryConversationRepository()
    conversation, _, reply = await _conversation(repo, customer_email="a@example.com")
    model = ScriptedModel()
    hub = InMemoryRealtimeHub()
    handlers = FanoutHandlers(
        repo, hub, SubjectGenerator(model, repo), SummaryGenerator(model, repo)
    )
    queue = InMemoryJobQueue()
    fanout = EventFanout(queue, settings=EngineSettings(summary_min_messages=1))
    await fanout.publish(
        _event(conversation, reply, new_messages=[reply], message_count=2)
    )

    channel = conversation_channel(conversation.slug)
    received: list[tuple[str, dict]] = []

    async def listen():
        async for item in hub.subscribe(channel):
            received.append(item)
            if len(received) == 2:
                return

    listener = asyncio.create_task(listen())
    for _ in range(100):
        if hub.subscriber_count(channel):
            break
        await asyncio.sleep(0)

    await FanoutWorker(queue, handlers.as_mapping()).drain_once()
    await asyncio.wait_for(listener, timeout=1)

    stored = await repo.get_conversation(conversation.id)
    assert stored.subject == "Refund request"
    assert stored.summary == ["Customer asked for help", "Assistant answered"]
    assert repo.notifications[reply.id].text == "You have a new reply for Chat"
    assert received[0][0] == MESSAGE_EVENT
    assert received[0][1]["id"] == reply.id
    assert received[1] == ("conversation.subject", {"subject": "Refund request"})
    assert not queue.failed


# ----------------------------------------------------------------------
# Helpers


def test_parse_summary_strips_bullets():
    assert parse_summary("- one\n\n* two\n• three\nfour") == ["one", "two", "three", "four"]


def test_clean_subject_trims_quotes_and_punctuation():
    assert clean_subject('  "Parcel   delayed."  ') == "Parcel delayed"


def test_format_sse():
    assert format_sse("conversation.subject", {"subject": "Hi"}) == (
        'event: conversation.subject\ndata: {"subject": "Hi"}\n\n'
    )


@pytest.mark.asyncio
async def test_notification_creation_is_idempotent():
    repo = InMemoryConversationRepository()
    conversation, _, reply = await _conversation(repo)

    first = await repo.create_notification(conversation.id, reply.id, "one")
    second = await repo.create_notification(conversation.id, reply.id, "one")

    assert first.id == second.id
    assert len(repo.notifications) == 1
    assert second.created_at >= datetime(2000, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_in_memory_queue_bookkeeping_is_bounded():
    queue = InMemoryJobQueue(max_keys=2, max_history=2)
    jobs = [
        FanoutJob(JobKind.BROADCAST_MESSAGE, message_id=i, conversation_id=1)
        for i in range(1, 4)
    ]
    for job in jobs:
        assert await queue.enqueue(job)
    assert not await queue.enqueue(jobs[-1])

    for job in await queue.next_batch(10, timeout=0):
        await queue.mark_done(job)

    assert [job.message_id for job in queue.completed] == [2, 3]
    # The oldest key has been forgotten, so it can be enqueued again.
    assert await queue.enqueue(jobs[0])


class _RecordingConnection:
    def __init__(self):
        self.executed: list[tuple[str, tuple]] = []

    async def execute(self, sql, params=()):
        self.executed.append((sql, params))
        return self

    async def fetchall(self):
        return []


@pytest.mark.asyncio
async def test_outbox_reclaims_jobs_left_running():
    conn = _RecordingConnection()

    class RecordingOutbox(PostgresJobOutbox):
        @asynccontextmanager
        async def _connect(self):
            yield conn

    outbox = RecordingOutbox("postgresql://localhost/support", stale_after=120)

    assert await outbox.next_batch(10, timeout=0) == []

    ((sql, params),) = conn.executed
    assert "status = 'running'" in sql
    assert "claimed_at < now() - make_interval(secs => %s)" in sql
    assert params == (120, 10)
