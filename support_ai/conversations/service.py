"""High-level conversation flow: inbound messages, staff replies and operator actions."""

from __future__ import annotations

import html
import logging
import re
from functools import partial
from uuid import uuid4

import httpx

from ..agents.orchestrator import ResponseOrchestrator, history_texts, message_text
from ..agents.prompts import PromptTemplateStore
from ..config import EngineSettings, get_settings
from ..fanout.events import EventFanout, FanoutEvent
from ..retrieval.assembler import PromptTooLongError, RetrievalAssembler, RetrievalContext
from ..tools.registry import ToolRegistry
from ..tools.repository import ToolRepository
from ..tools.strategies import (
    ESCALATION_ACKNOWLEDGEMENT,
    KnowledgeSearchToolStrategy,
    SetUserEmailToolStrategy,
    ToolStrategy,
)
from . import schemas, state as transitions
from .escalation import EscalationDetector
from .repository import ConversationNotFoundError, ConversationRepository, MessageNotFoundError
from .schemas import MessageRole
from .state import ConversationStatus

logger = logging.getLogger(__name__)

HUMAN_QUEUE_ACKNOWLEDGEMENT = (
    "Our support team will respond to your message shortly. Thank you for your patience."
)

_TAG_RE = re.compile(r"<[^>]+>")


def clean_up_text(text: str) -> str:
    """Strip markup and collapse whitespace before text is shown to the model."""

    without_tags = _TAG_RE.sub(" ", text)
    return " ".join(html.unescape(without_tags).split())


class ConversationService:
    """Coordinates persistence, retrieval, the assistant turn and fanout."""

    def __init__(
        self,
        repository: ConversationRepository,
        assembler: RetrievalAssembler,
        orchestrator: ResponseOrchestrator,
        detector: EscalationDetector,
        fanout: EventFanout,
        tools: ToolRepository,
        *,
        http_client: httpx.AsyncClient,
        settings: EngineSettings | None = None,
        prompts: PromptTemplateStore | None = None,
    ) -> None:
        self._repository = repository
        self._assembler = assembler
        self._orchestrator = orchestrator
        self._detector = detector
        self._fanout = fanout
        self._tools = tools
        self._http_client = http_client
        self._settings = settings or get_settings()
        self._prompts = prompts or PromptTemplateStore()

    # ------------------------------------------------------------------
    # Queries

    async def get_conversation(self, slug: str) -> schemas.Conversation:
        conversation = await self._repository.get_conversation_by_slug(slug)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {slug} not found")
        return conversation

    async def get_conversation_view(self, slug: str) -> schemas.ConversationView:
        conversation = await self.get_conversation(slug)
        messages = await self._repository.list_messages(conversation.id)
        return schemas.ConversationView.build(conversation, messages)

    async def create_conversation(
        self,
        *,
        customer_email: str | None = None,
        is_prompt: bool = False,
        subject: str | None = None,
    ) -> schemas.Conversation:
        return await self._repository.create_conversation(
            uuid4().hex,
            subject=subject or self._settings.placeholder_subject,
            is_prompt=is_prompt,
            customer_email=customer_email,
        )

    # ------------------------------------------------------------------
    # Helpers

    async def _search_knowledge(
        self, conversation: schemas.Conversation, query: str
    ) -> str:
        try:
            context = await self._assembler.assemble(
                query, system_prompt="", exclude_slug=conversation.slug
            )
        except PromptTooLongError:
            return ""
        return context.text

    async def _set_customer_email(
        self, conversation: schemas.Conversation, customer_email: str
    ) -> None:
        await self._repository.update_customer_email(conversation.id, customer_email)
        logger.info(
            "Customer email set from chat", extra={"conversation_slug": conversation.slug}
        )

    async def _registry(self, conversation: schemas.Conversation) -> ToolRegistry:
        builtins: list[ToolStrategy] = [
            KnowledgeSearchToolStrategy(partial(self._search_knowledge, conversation))
        ]
        if not conversation.customer_email:
            builtins.append(
                SetUserEmailToolStrategy(partial(self._set_customer_email, conversation))
            )
        return ToolRegistry(
            await self._tools.list_chat_tools(),
            http_client=self._http_client,
            builtins=builtins,
            settings=self._settings,
        )

    async def _retrieve(
        self,
        conversation: schemas.Conversation,
        user_message: schemas.Message,
        history: list[schemas.Message],
    ) -> RetrievalContext:
        try:
            return await self._assembler.assemble(
                message_text(user_message),
                system_prompt=self._prompts.resolve("chat"),
                exclude_slug=conversation.slug,
                history=history_texts(history),
            )
        except PromptTooLongError as exc:
            logger.warning(
                "Prompt too long for retrieval context: %s",
                exc,
                extra={"conversation_slug": conversation.slug},
            )
            return RetrievalContext()

    async def _publish(
        self,
        conversation_id: int,
        message: schemas.Message,
        new_messages: list[schemas.Message],
        *,
        history: list[schemas.Message],
        opened_by_customer: bool = False,
        escalated: bool = False,
    ) -> None:
        conversation = await self._repository.get_conversation(conversation_id)
        if conversation is None:
            return
        user_messages = [
            m for m in [*history, *new_messages] if m.role is MessageRole.USER
        ]
        await self._fanout.publish(
            FanoutEvent(
                conversation=conversation,
                message=message,
                new_messages=new_messages,
                opened_by_customer=opened_by_customer,
                escalated=escalated,
                message_count=await self._repository.count_messages(conversation.id),
                first_user_message=user_messages[0].body if user_messages else None,
                is_first_user_message=len(user_messages) == 1,
            )
        )

    async def _store_user_message(
        self,
        conversation: schemas.Conversation,
        text: str,
        client_message_id: str | None,
    ) -> tuple[schemas.Message, schemas.Message | None]:
        """Persist the customer's message, reusing a retried one when possible.

        Returns the message and, for a retry that already has an answer, that
        earlier answer.
        """

        if client_message_id:
            existing = await self._repository.find_message_by_client_id(
                conversation.id, client_message_id
            )
            if existing is not None:
                return existing, await self._repository.find_response(existing.id)
        message = await self._repository.add_message(
            conversation.id,
            schemas.MessageDraft(
                role=MessageRole.USER,
                body=text,
                cleaned_up_text=clean_up_text(text),
                client_message_id=client_message_id,
            ),
        )
        return message, None

    # ------------------------------------------------------------------
    # Inbound customer messages

    async def handle_incoming_message(
        self,
        slug: str,
        text: str,
        *,
        client_message_id: str | None = None,
        customer_email: str | None = None,
    ) -> schemas.ChatReply:
        """Persist a customer message and produce the assistant's outcome.

        Returns immediately after the reply (or escalation) is stored;
        broadcasts, subject and summary generation and notifications are only
        enqueued.
        """

        conversation = await self.get_conversation(slug)
        if customer_email and customer_email != conversation.customer_email:
            conversation = await self._repository.update_customer_email(
                conversation.id, customer_email
            )
        user_message, earlier_reply = await self._store_user_message(
            conversation, text, client_message_id
        )
        if earlier_reply is not None and earlier_reply.role is MessageRole.TOOL:
            return schemas.ChatReply(
                conversation_slug=slug,
                kind="escalated",
                text=ESCALATION_ACKNOWLEDGEMENT,
                escalated=True,
            )
        if earlier_reply is not None:
            return schemas.ChatReply(
                conversation_slug=slug,
                kind="reply",
                text=earlier_reply.body,
                message_id=earlier_reply.id,
                escalated=not conversation.state.is_ai_owned,
            )

        if conversation.status is ConversationStatus.SPAM:
            logger.info("Ignoring message on spam conversation", extra={"conversation_slug": slug})
            return schemas.ChatReply(conversation_slug=slug, kind="no_action")

        reopened = False
        if conversation.status is ConversationStatus.CLOSED:
            new_state = transitions.reopen(conversation.state)
            if new_state is not None:
                conversation = await self._repository.update_state(conversation.id, new_state)
                reopened = True

        history = [
            m
            for m in await self._repository.list_messages(conversation.id)
            if m.id < user_message.id
        ]
        is_first = not any(m.role is MessageRole.USER for m in history)
        opened_by_customer = reopened or is_first

        if not conversation.state.is_ai_owned:
            return await self._handle_human_owned(
                conversation, user_message, history, is_first, opened_by_customer
            )

        context = await self._retrieve(conversation, user_message, history)
        registry = await self._registry(conversation)
        outcome = await self._orchestrator.respond(
            conversation, user_message, history, context, registry
        )

        if (
            outcome.kind == "reply"
            and self._settings.auto_close_on_resolution
        ):
            closed = transitions.auto_close(conversation.state)
            if closed is not None:
                await self._repository.update_state(conversation.id, closed)

        terminal = outcome.message
        if terminal is None and outcome.escalated and outcome.tool_messages:
            terminal = outcome.tool_messages[-1]
        new_messages = [user_message]
        if terminal is not None:
            new_messages.append(terminal)
        await self._publish(
            conversation.id,
            terminal or user_message,
            new_messages,
            history=history,
            opened_by_customer=opened_by_customer,
            escalated=outcome.escalated,
        )
        return schemas.ChatReply(
            conversation_slug=slug,
            kind=outcome.kind,
            text=outcome.text,
            message_id=outcome.message.id if outcome.message else None,
            escalated=outcome.escalated,
        )

    async def _handle_human_owned(
        self,
        conversation: schemas.Conversation,
        user_message: schemas.Message,
        history: list[schemas.Message],
        is_first: bool,
        opened_by_customer: bool,
    ) -> schemas.ChatReply:
        acknowledgement: schemas.Message | None = None
        if is_first:
            acknowledgement = await self._repository.add_message(
                conversation.id,
                schemas.MessageDraft(
                    role=MessageRole.AI_ASSISTANT,
                    body=HUMAN_QUEUE_ACKNOWLEDGEMENT,
                    response_to_id=user_message.id,
                ),
            )
        new_messages = [user_message] + ([acknowledgement] if acknowledgement else [])
        await self._publish(
            conversation.id,
            acknowledgement or user_message,
            new_messages,
            history=history,
            opened_by_customer=opened_by_customer,
        )
        if acknowledgement is None:
            return schemas.ChatReply(conversation_slug=conversation.slug, kind="no_action")
        return schemas.ChatReply(
            conversation_slug=conversation.slug,
            kind="acknowledged",
            text=acknowledgement.body,
            message_id=acknowledgement.id,
        )

    # ------------------------------------------------------------------
    # Staff and operator actions

    async def staff_reply(
        self, slug: str, staff_user_id: str, body: str
    ) -> schemas.Message:
        """Record a staff reply; the conversation is handed to that staff member."""

        conversation = await self.get_conversation(slug)
        event = await self._detector.on_staff_reply(conversation, staff_user_id)
        history = await self._repository.list_messages(conversation.id)
        message = await self._repository.add_message(
            conversation.id,
            schemas.MessageDraft(
                role=MessageRole.STAFF, body=body, staff_user_id=staff_user_id
            ),
        )
        await self._publish(
            conversation.id,
            message,
            [message],
            history=history,
            escalated=event is not None,
        )
        return message

    async def flag_message(
        self, slug: str, message_id: int, reason: str | None
    ) -> schemas.EscalationEvent | None:
        conversation = await self.get_conversation(slug)
        message = await self._repository.get_message(message_id)
        if message is None or message.conversation_id != conversation.id:
            raise MessageNotFoundError(f"Message {message_id} not found in {slug}")
        return await self._detector.on_bad_flag(conversation, message, reason)

    async def update_status(self, slug: str, action: str) -> schemas.Conversation:
        actions = {
            "close": transitions.close,
            "spam": transitions.mark_spam,
            "reopen": transitions.reopen,
        }
        try:
            transition = actions[action]
        except KeyError as exc:
            raise ValueError(f"Unknown status action {action!r}") from exc
        conversation = await self.get_conversation(slug)
        new_state = transition(conversation.state)
        if new_state is None:
            return conversation
        logger.info(
            "Conversation status %s -> %s",
            conversation.status.value,
            new_state.status.value,
            extra={"conversation_slug": slug},
        )
        return await self._repository.update_state(conversation.id, new_state)
