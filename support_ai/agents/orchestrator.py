"""Drive one assistant turn: model calls, tool execution and the final reply.

The loop is bounded. Each model call counts as one iteration; when the model
keeps asking for tools past ``MAX_TOOL_ITERATIONS`` the turn ends with a fixed
fallback reply instead of another round trip.

Nothing is written until the turn reaches a terminal outcome. The tool
results and the reply of a turn are then stored together, so a provider
failure or a cancelled request leaves no partial transcript behind. The one
write that happens mid-turn is the escalation itself, which must be durable
before the customer is told a human is on the way.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from ..config import EngineSettings, get_settings
from ..conversations.escalation import EscalationDetector
from ..conversations.repository import ConversationRepository
from ..conversations.schemas import (
    Conversation,
    EscalationEvent,
    EscalationTrigger,
    Message,
    MessageDraft,
    MessageRole,
)
from ..retrieval.assembler import RetrievalContext
from ..tools.registry import ToolRegistry
from ..tools.schemas import ToolInvocationResult
from ..tools.strategies import ESCALATION_ACKNOWLEDGEMENT
from .model import ModelClient, ToolCall
from .prompts import PromptTemplateStore

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Let me get a human to help you with this."

OutcomeKind = Literal["reply", "escalated", "fallback"]


@dataclass
class TurnOutcome:
    kind: OutcomeKind
    text: str
    message: Message | None = None
    tool_messages: list[Message] = field(default_factory=list)
    escalation_event: EscalationEvent | None = None
    iterations: int = 0

    @property
    def escalated(self) -> bool:
        return self.kind == "escalated"


def message_text(message: Message) -> str:
    return message.cleaned_up_text or message.body


def history_to_model_messages(history: list[Message]) -> list[dict[str, Any]]:
    """Replay stored messages in the chat completions format.

    Each stored tool message expands into the assistant's tool call followed by
    the tool result, keyed by the original call id.
    """

    replay: list[dict[str, Any]] = []
    for message in history:
        if message.role is MessageRole.USER:
            replay.append({"role": "user", "content": message_text(message)})
        elif message.role in (MessageRole.AI_ASSISTANT, MessageRole.STAFF):
            replay.append({"role": "assistant", "content": message.body})
        elif message.role is MessageRole.TOOL and message.tool_result is not None:
            result = message.tool_result
            replay.append(_tool_call_turn([(result.call_id, result.tool, result.parameters)]))
            replay.append(
                {
                    "role": "tool",
                    "tool_call_id": result.call_id,
                    "content": result.model_content(),
                }
            )
    return replay


def history_texts(history: list[Message]) -> list[str]:
    """The text of each replayed history turn, as counted against the budget."""

    return [
        turn["content"] if turn["content"] is not None else json.dumps(turn["tool_calls"])
        for turn in history_to_model_messages(history)
    ]


def _tool_call_turn(calls: list[tuple[str, str, dict[str, Any]]]) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {
                "id": call_id,
                "type": "function",
                "function": {"name": name, "arguments": json.dumps(arguments, default=str)},
            }
            for call_id, name, arguments in calls
        ],
    }


def _tool_draft(result: ToolInvocationResult) -> MessageDraft:
    return MessageDraft(role=MessageRole.TOOL, body=result.summary, tool_result=result)


class ResponseOrchestrator:
    """Produce the assistant's outcome for one inbound customer message."""

    def __init__(
        self,
        model: ModelClient,
        detector: EscalationDetector,
        repository: ConversationRepository,
        *,
        settings: EngineSettings | None = None,
        prompts: PromptTemplateStore | None = None,
    ) -> None:
        self._model = model
        self._detector = detector
        self._repository = repository
        self._settings = settings or get_settings()
        self._prompts = prompts or PromptTemplateStore()
        self._detached: set[asyncio.Task[ToolInvocationResult]] = set()

    # ------------------------------------------------------------------
    # Helpers

    def build_messages(
        self,
        user_message: Message,
        history: list[Message],
        context: RetrievalContext,
    ) -> list[dict[str, Any]]:
        system = self._prompts.render_system("chat", context.text or None)
        return [
            {"role": "system", "content": system},
            *history_to_model_messages(history),
            {"role": "user", "content": message_text(user_message)},
        ]

    async def _run_tool(
        self, registry: ToolRegistry, call: ToolCall
    ) -> ToolInvocationResult:
        # Shielded so a dispatched request finishes even if the turn is cancelled.
        task = asyncio.ensure_future(registry.invoke(call.name, call.arguments, call.id))
        self._detached.add(task)
        task.add_done_callback(self._detached.discard)
        return await asyncio.shield(task)

    async def _escalate(
        self,
        conversation: Conversation,
        user_message: Message,
        registry: ToolRegistry,
        call: ToolCall,
        pending: list[MessageDraft],
        iterations: int,
    ) -> TurnOutcome:
        reason = str(call.arguments.get("reason") or "").strip() or "No reason given"
        event = await self._detector.escalate(
            conversation, EscalationTrigger.EXPLICIT_TOOL_CALL, reason=reason
        )
        result = await registry.invoke(call.name, {"reason": reason}, call.id)
        # Linked to the customer message so a retried send finds it.
        acknowledgement = MessageDraft(
            role=MessageRole.TOOL,
            body=ESCALATION_ACKNOWLEDGEMENT,
            tool_result=result,
            response_to_id=user_message.id,
        )
        stored = await self._repository.add_messages(
            conversation.id, [*pending, acknowledgement]
        )
        return TurnOutcome(
            kind="escalated",
            text=ESCALATION_ACKNOWLEDGEMENT,
            tool_messages=stored,
            escalation_event=event,
            iterations=iterations,
        )

    # ------------------------------------------------------------------
    # Turn

    async def respond(
        self,
        conversation: Conversation,
        user_message: Message,
        history: list[Message],
        context: RetrievalContext,
        registry: ToolRegistry,
    ) -> TurnOutcome:
        messages = self.build_messages(user_message, history, context)
        tools = registry.schemas()
        pending: list[MessageDraft] = []
        max_iterations = max(self._settings.max_tool_iterations, 1)
        log_extra = {"conversation_slug": conversation.slug, "message_id": user_message.id}

        text: str | None = None
        iterations = 0
        while iterations < max_iterations:
            iterations += 1
            response = await self._model.complete(messages, tools=tools, task="chat")
            if not response.wants_tools:
                text = response.text or ""
                break

            messages.append(
                _tool_call_turn([(c.id, c.name, c.arguments) for c in response.tool_calls])
            )
            for call in response.tool_calls:
                if registry.is_escalation(call.name):
                    logger.info("Model requested human support", extra=log_extra)
                    return await self._escalate(
                        conversation, user_message, registry, call, pending, iterations
                    )
                result = await self._run_tool(registry, call)
                pending.append(_tool_draft(result))
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": result.model_content(),
                    }
                )

        kind: OutcomeKind = "reply"
        if text is None:
            logger.warning(
                "Tool loop hit the %d iteration cap; sending fallback reply",
                max_iterations,
                extra=log_extra,
            )
            kind, text = "fallback", FALLBACK_REPLY

        reply = MessageDraft(
            role=MessageRole.AI_ASSISTANT, body=text, response_to_id=user_message.id
        )
        stored = await self._repository.add_messages(conversation.id, [*pending, reply])
        return TurnOutcome(
            kind=kind,
            text=text,
            message=stored[-1],
            tool_messages=stored[:-1],
            iterations=iterations,
        )
