"""Invocation strategies for assistant tools.

The set of strategies is closed: customer-configured HTTP tools and the
built-in tools for the human handoff, knowledge search and capturing the
customer's email address. All of them expose ``execute(parameters)`` and report
failures as results instead of raising, so the tool loop can show the model
what went wrong.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from .schemas import (
    HUMAN_SUPPORT_TOOL,
    KNOWLEDGE_BASE_TOOL,
    SET_USER_EMAIL_TOOL,
    NumberValue,
    ParameterType,
    StringValue,
    Tool,
    ToolParameter,
)

logger = logging.getLogger(__name__)

ESCALATION_ACKNOWLEDGEMENT = (
    "The conversation has been escalated to a human agent. You will be contacted soon."
)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


@dataclass(frozen=True)
class StrategyResult:
    success: bool
    data: Any


class ToolStrategy(Protocol):
    tool: Tool

    async def execute(
        self, parameters: dict[str, StringValue | NumberValue]
    ) -> StrategyResult: ...


class HttpToolStrategy:
    """Call a customer API endpoint described by a :class:`Tool` record."""

    def __init__(
        self,
        tool: Tool,
        client: httpx.AsyncClient,
        *,
        timeout: float = 15.0,
        error_body_limit: int = 2000,
    ) -> None:
        self.tool = tool
        self._client = client
        self._timeout = timeout
        self._error_body_limit = error_body_limit

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.tool.auth_token:
            headers["Authorization"] = f"Bearer {self.tool.auth_token}"
        return headers

    def _build_url(self, payload: dict[str, Any]) -> str:
        def _replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in payload:
                return match.group(0)
            return quote(str(payload.pop(name)), safe="")

        return _PLACEHOLDER.sub(_replace, self.tool.url)

    def _truncate(self, text: str) -> str:
        if len(text) <= self._error_body_limit:
            return text
        return text[: self._error_body_limit] + "..."

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self, parameters: dict[str, StringValue | NumberValue]
    ) -> StrategyResult:
        payload = {name: value.raw for name, value in parameters.items()}
        url = self._build_url(payload)
        method = (self.tool.request_method or "GET").upper()
        request_kwargs: dict[str, Any] = {
            "headers": self._headers(),
            "timeout": self._timeout,
        }
        if method == "GET":
            request_kwargs["params"] = payload
        else:
            request_kwargs["json"] = payload

        try:
            response = await self._client.request(method, url, **request_kwargs)
        except httpx.TimeoutException:
            logger.warning("Tool %s timed out calling %s", self.tool.slug, url)
            return StrategyResult(
                success=False,
                data={"error": f"Request timed out after {self._timeout:g} seconds"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Tool %s request failed: %s", self.tool.slug, exc)
            return StrategyResult(success=False, data={"error": str(exc)})

        if response.is_success:
            return StrategyResult(success=True, data=self._parse_body(response))
        logger.info(
            "Tool %s returned HTTP %s", self.tool.slug, response.status_code
        )
        return StrategyResult(
            success=False,
            data={
                "status": response.status_code,
                "body": self._truncate(response.text),
            },
        )


HUMAN_SUPPORT = Tool(
    slug=HUMAN_SUPPORT_TOOL,
    name="Request human support",
    description=(
        "Escalate the conversation to a human support agent. Use this when the "
        "customer asks for a person, when you cannot resolve the request, or when "
        "the customer is frustrated."
    ),
    parameters=[
        ToolParameter(
            name="reason",
            type=ParameterType.STRING,
            required=True,
            description="Why the conversation needs a human",
        )
    ],
    request_method="POST",
    available_in_chat=True,
)


class EscalationToolStrategy:
    """The reserved handoff tool. It never touches the network.

    Recording the escalation itself is the orchestrator's job; this strategy
    only produces the acknowledgement shown to the customer.
    """

    tool = HUMAN_SUPPORT

    async def execute(
        self, parameters: dict[str, StringValue | NumberValue]
    ) -> StrategyResult:
        return StrategyResult(success=True, data=ESCALATION_ACKNOWLEDGEMENT)


NO_KNOWLEDGE_FOUND = "No matching knowledge bank entries or past conversations found."
EMAIL_SET_ACKNOWLEDGEMENT = (
    "Your email has been set. You can now request human support if needed."
)

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

KNOWLEDGE_BASE = Tool(
    slug=KNOWLEDGE_BASE_TOOL,
    name="Search knowledge base",
    description=(
        "Search the knowledge bank and past conversations. Use this when the "
        "context you were given does not answer the customer's question."
    ),
    parameters=[
        ToolParameter(
            name="query",
            type=ParameterType.STRING,
            required=True,
            description="What to search the knowledge base for",
        )
    ],
)

SET_USER_EMAIL = Tool(
    slug=SET_USER_EMAIL_TOOL,
    name="Set user email",
    description=(
        "Set the email address of the current anonymous customer so they can be "
        "contacted later."
    ),
    parameters=[
        ToolParameter(
            name="email",
            type=ParameterType.STRING,
            required=True,
            description="Email address to set for the customer",
        )
    ],
)


class KnowledgeSearchToolStrategy:
    """Run retrieval again mid-turn for a query the model chose."""

    tool = KNOWLEDGE_BASE

    def __init__(self, search: Callable[[str], Awaitable[str]]) -> None:
        self._search = search

    async def execute(
        self, parameters: dict[str, StringValue | NumberValue]
    ) -> StrategyResult:
        query = str(parameters["query"].raw)
        try:
            text = await self._search(query)
        except Exception as exc:
            logger.warning("Knowledge base search failed: %s", exc)
            return StrategyResult(
                success=False, data={"error": "Knowledge base search failed"}
            )
        return StrategyResult(success=True, data=text or NO_KNOWLEDGE_FOUND)


class SetUserEmailToolStrategy:
    """Attach the email address an anonymous customer gave in the chat."""

    tool = SET_USER_EMAIL

    def __init__(self, save: Callable[[str], Awaitable[None]]) -> None:
        self._save = save

    async def execute(
        self, parameters: dict[str, StringValue | NumberValue]
    ) -> StrategyResult:
        email = str(parameters["email"].raw).strip()
        if not _EMAIL.match(email):
            return StrategyResult(
                success=False, data={"error": f"{email!r} is not a valid email address"}
            )
        try:
            await self._save(email)
        except Exception as exc:
            logger.warning("Could not store customer email: %s", exc)
            return StrategyResult(success=False, data={"error": "Could not store the email"})
        return StrategyResult(success=True, data=EMAIL_SET_ACKNOWLEDGEMENT)
