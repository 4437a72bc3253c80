"""Registry that resolves tool calls to their invocation strategy."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

import httpx

from ..config import EngineSettings, get_settings
from .schemas import HUMAN_SUPPORT_TOOL, RESERVED_TOOL_NAMES, Tool, ToolInvocationResult
from .strategies import EscalationToolStrategy, HttpToolStrategy, ToolStrategy
from .validation import ToolValidationError, validate_parameters

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Tools available to one assistant turn, keyed by the name the model sees."""

    def __init__(
        self,
        tools: Iterable[Tool],
        *,
        http_client: httpx.AsyncClient,
        include_human_support: bool = True,
        builtins: Iterable[ToolStrategy] = (),
        settings: EngineSettings | None = None,
    ) -> None:
        """Register the customer ``tools`` plus built-in strategies.

        Customer tools may not use a reserved built-in name. ``builtins`` are
        the per-conversation built-ins such as knowledge search; the human
        handoff is added unless ``include_human_support`` is false.
        """

        settings = settings or get_settings()
        self._strategies: dict[str, ToolStrategy] = {}
        for tool in tools:
            if not tool.available_in_chat:
                continue
            if tool.slug in RESERVED_TOOL_NAMES:
                logger.warning("Ignoring customer tool using reserved name %s", tool.slug)
                continue
            self._strategies[tool.slug] = HttpToolStrategy(
                tool,
                http_client,
                timeout=settings.tool_timeout_seconds,
                error_body_limit=settings.tool_error_body_limit,
            )
        for strategy in builtins:
            self._strategies[strategy.tool.slug] = strategy
        if include_human_support:
            self._strategies[HUMAN_SUPPORT_TOOL] = EscalationToolStrategy()

    def __contains__(self, name: str) -> bool:
        return name in self._strategies

    def __len__(self) -> int:
        return len(self._strategies)

    @property
    def names(self) -> list[str]:
        return list(self._strategies)

    def schemas(self) -> list[dict[str, Any]]:
        """Function declarations in the shape the chat completions API expects."""

        return [strategy.tool.function_schema() for strategy in self._strategies.values()]

    def resolve(self, name: str) -> ToolStrategy | None:
        return self._strategies.get(name)

    @staticmethod
    def is_escalation(name: str) -> bool:
        return name == HUMAN_SUPPORT_TOOL

    async def invoke(
        self, name: str, arguments: Mapping[str, Any] | None, call_id: str
    ) -> ToolInvocationResult:
        """Validate and execute one tool call.

        Unknown tools, invalid arguments and failed requests all produce an
        unsuccessful result rather than an exception.
        """

        arguments = dict(arguments or {})
        strategy = self.resolve(name)
        if strategy is None:
            logger.warning("Model requested unknown tool %s", name, extra={"tool": name})
            return ToolInvocationResult(
                tool=name,
                call_id=call_id,
                parameters=arguments,
                success=False,
                raw_result={"error": f"Unknown tool: {name}"},
            )
        try:
            values = validate_parameters(strategy.tool, arguments)
        except ToolValidationError as exc:
            logger.info("Rejected arguments for tool %s: %s", name, exc)
            return ToolInvocationResult(
                tool=name,
                call_id=call_id,
                parameters=arguments,
                success=False,
                raw_result={"error": str(exc), "details": exc.errors},
            )
        result = await strategy.execute(values)
        return ToolInvocationResult(
            tool=name,
            call_id=call_id,
            parameters={key: value.raw for key, value in values.items()},
            success=result.success,
            raw_result=result.data,
        )
