"""Language-model clients used by the orchestrator and the fanout generators."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import openai
from openai import AsyncOpenAI

from ..config import EngineSettings, get_settings
from .providers import ProviderRegistry
from .responses import ResponseParameterStore

logger = logging.getLogger(__name__)


class ModelProviderError(RuntimeError):
    """Raised when the model provider fails after retries."""


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelResponse:
    """One model turn: either final text or a batch of tool calls."""

    text: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


class ModelClient(Protocol):
    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        task: str = "chat",
    ) -> ModelResponse: ...


def _decode_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except ValueError:
        logger.warning("Model produced non-JSON tool arguments: %.200s", raw)
        return {}
    return decoded if isinstance(decoded, dict) else {}


class OpenAIChatModel:
    """Chat completions with function calling through ``AsyncOpenAI``.

    Transient failures are retried with backoff by the OpenAI client itself
    (``max_retries``); anything still failing surfaces as
    :class:`ModelProviderError`.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str,
        parameters: ResponseParameterStore | None = None,
    ) -> None:
        self._client = client
        self.model = model
        self._parameters = parameters or ResponseParameterStore()

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        task: str = "chat",
    ) -> ModelResponse:
        request: dict[str, Any] = {
            "model": self.model,
            "messages": list(messages),
            **self._parameters.defaults_for(task),
        }
        if tools:
            request["tools"] = list(tools)
        try:
            completion = await self._client.chat.completions.create(**request)
        except openai.OpenAIError as exc:
            logger.warning("Model call failed for task %s: %s", task, exc)
            raise ModelProviderError(str(exc)) from exc

        message = completion.choices[0].message
        calls = tuple(
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=_decode_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
        )
        return ModelResponse(text=(message.content or "").strip() or None, tool_calls=calls)


class SandboxChatModel:
    """Deterministic stand-in used when no provider key is configured."""

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        task: str = "chat",
    ) -> ModelResponse:
        last_user = next(
            (m.get("content") for m in reversed(messages) if m.get("role") == "user"),
            "",
        )
        if task == "subject":
            return ModelResponse(text=" ".join(str(last_user).split()[:6]) or "Support request")
        if task == "summary":
            return ModelResponse(text=f"- Customer wrote: {str(last_user)[:120]}")
        return ModelResponse(text=f"Thanks for reaching out! You asked: {last_user}")


def build_model_client(
    settings: EngineSettings | None = None,
    providers: ProviderRegistry | None = None,
) -> ModelClient:
    """Return an OpenAI-backed client, or the sandbox model without credentials."""

    settings = settings or get_settings()
    credentials = (providers or ProviderRegistry()).get_credentials("openai")
    if not credentials.configured:
        logger.info("OPENAI_API_KEY not set; using the sandbox model")
        return SandboxChatModel()
    client = AsyncOpenAI(
        api_key=credentials.api_key,
        base_url=credentials.base_url,
        timeout=settings.model_timeout_seconds,
        max_retries=settings.model_max_retries,
    )
    return OpenAIChatModel(client, model=settings.openai_model)
