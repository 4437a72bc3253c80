"""Storage for customer-configured tools."""

from __future__ import annotations

from typing import Any, Protocol

from ..db import PostgresStore
from .schemas import Tool, ToolParameter


class ToolRepository(Protocol):
    async def list_chat_tools(self) -> list[Tool]: ...


class PostgresToolRepository(PostgresStore):
    @staticmethod
    def _row_to_tool(row: dict[str, Any]) -> Tool:
        return Tool(
            id=row["id"],
            slug=row["slug"],
            name=row["name"],
            description=row["description"],
            parameters=[ToolParameter(**p) for p in row.get("parameters") or []],
            request_method=row["request_method"],
            url=row["url"],
            auth_token=row.get("auth_token"),
            available_in_chat=row["available_in_chat"],
        )

    async def list_chat_tools(self) -> list[Tool]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT * FROM tools
                WHERE enabled AND available_in_chat
                ORDER BY id ASC
                """
            )
            rows = await cur.fetchall()
        return [self._row_to_tool(row) for row in rows]


class InMemoryToolRepository:
    def __init__(self, tools: list[Tool] | None = None) -> None:
        self.tools = list(tools or [])

    async def list_chat_tools(self) -> list[Tool]:
        return [tool for tool in self.tools if tool.available_in_chat]
