import pytest

from support_ai.conversations.escalation import (
    EscalationDetector,
    EscalationPersistenceError,
)
from support_ai.conversations.repository import InMemoryConversationRepository
from support_ai.conversations.schemas import (
    EscalationTrigger,
    MessageDraft,
    MessageRole,
)
from support_ai.conversations.state import HumanOwner


class FailingRepository(InMemoryConversationRepository):
    async def record_escalation(self, conversation_id, trigger, **kwargs):
        raise ConnectionError("database unavailable")


@pytest.mark.asyncio
async def test_escalation_records_one_event():
    repo = InMemoryConversationRepository()
    conversation = await repo.create_conversation("abc")
    detector = EscalationDetector(repo)

    event = await detector.escalate(
        conversation, EscalationTrigger.EXPLICIT_TOOL_CALL, reason="wants a person"
    )

    assert event.id == 1
    assert event.trigger is EscalationTrigger.EXPLICIT_TOOL_CALL
    assert event.reason == "wants a person"
    assert event.previous_state.is_ai_owned
    assert not event.new_state.is_ai_owned
    stored = await repo.get_conversation(conversation.id)
    assert stored.state.owner == HumanOwner()


@pytest.mark.asyncio
async def test_escalation_is_idempotent():
    repo = InMemoryConversationRepository()
    conversation = await repo.create_conversation("abc")
    detector = EscalationDetector(repo)

    await detector.escalate(conversation, EscalationTrigger.EXPLICIT_TOOL_CALL)
    conversation = await repo.get_conversation(conversation.id)
    second = await detector.escalate(conversation, EscalationTrigger.BAD_FLAG)

    assert second is None
    assert len(await repo.list_escalation_events(conversation.id)) == 1


@pytest.mark.asyncio
async def test_persistence_failure_leaves_the_conversation_with_the_ai():
    repo = FailingRepository()
    conversation = await repo.create_conversation("abc")
    detector = EscalationDetector(repo)

    with pytest.raises(EscalationPersistenceError):
        await detector.escalate(conversation, EscalationTrigger.EXPLICIT_TOOL_CALL)

    stored = await repo.get_conversation(conversation.id)
    assert stored.state.is_ai_owned
    assert repo.escalation_events == []


@pytest.mark.asyncio
async def test_staff_reply_assigns_the_replying_user():
    repo = InMemoryConversationRepository()
    conversation = await repo.create_conversation("abc")
    detector = EscalationDetector(repo)

    event = await detector.on_staff_reply(conversation, "staff-3")

    assert event.trigger is EscalationTrigger.HUMAN_REPLY
    stored = await repo.get_conversation(conversation.id)
    assert stored.state.owner == HumanOwner(user_id="staff-3")


@pytest.mark.asyncio
async def test_bad_flag_on_assistant_reply_escalates():
    repo = InMemoryConversationRepository()
    conversation = await repo.create_conversation("abc")
    reply = await repo.add_message(
        conversation.id, MessageDraft(role=MessageRole.AI_ASSISTANT, body="Wrong answer")
    )
    detector = EscalationDetector(repo)

    event = await detector.on_bad_flag(conversation, reply, "made up a policy")

    assert event.trigger is EscalationTrigger.BAD_FLAG
    assert event.reason == "made up a policy"
    flagged = await repo.get_message(reply.id)
    assert flagged.is_flagged_as_bad
    assert flagged.reason == "made up a policy"


@pytest.mark.asyncio
async def test_bad_flag_on_customer_message_only_marks_it():
    repo = InMemoryConversationRepository()
    conversation = await repo.create_conversation("abc")
    message = await repo.add_message(
        conversation.id, MessageDraft(role=MessageRole.USER, body="spam spam")
    )
    detector = EscalationDetector(repo)

    assert await detector.on_bad_flag(conversation, message, None) is None
    assert (await repo.get_message(message.id)).is_flagged_as_bad
    assert (await repo.get_conversation(conversation.id)).state.is_ai_owned


@pytest.mark.asyncio
async def test_escalation_from_a_stale_snapshot_keeps_the_staff_owner():
    repo = InMemoryConversationRepository()
    snapshot = await repo.create_conversation("abc")
    detector = EscalationDetector(repo)
    await detector.on_staff_reply(snapshot, "staff-7")

    second = await detector.escalate(snapshot, EscalationTrigger.EXPLICIT_TOOL_CALL)

    assert second is None
    assert len(await repo.list_escalation_events(snapshot.id)) == 1
    stored = await repo.get_conversation(snapshot.id)
    assert stored.state.owner == HumanOwner(user_id="staff-7")
