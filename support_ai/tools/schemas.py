"""Tool declarations, validated parameter values and invocation results."""

from __future__ import annotations

import enum
import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

HUMAN_SUPPORT_TOOL = "request_human_support"
KNOWLEDGE_BASE_TOOL = "search_knowledge_base"
SET_USER_EMAIL_TOOL = "set_user_email"

RESERVED_TOOL_NAMES = frozenset({HUMAN_SUPPORT_TOOL, KNOWLEDGE_BASE_TOOL, SET_USER_EMAIL_TOOL})


class ParameterType(str, enum.Enum):
    STRING = "string"
    NUMBER = "number"


class ToolParameter(BaseModel):
    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = False
    description: str | None = None


class Tool(BaseModel):
    """A customer-configured HTTP tool the assistant may call."""

    id: int | None = None
    slug: str
    name: str
    description: str
    parameters: list[ToolParameter] = Field(default_factory=list)
    request_method: str = "GET"
    url: str = ""
    auth_token: str | None = Field(default=None, repr=False)
    available_in_chat: bool = True

    def function_schema(self) -> dict[str, Any]:
        """Return the OpenAI function-calling declaration for this tool."""

        properties = {
            param.name: {
                "type": param.type.value,
                **({"description": param.description} if param.description else {}),
            }
            for param in self.parameters
        }
        return {
            "type": "function",
            "function": {
                "name": self.slug,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }


class StringValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["string"] = "string"
    value: str

    @property
    def raw(self) -> str:
        return self.value


class NumberValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["number"] = "number"
    value: int | float

    @property
    def raw(self) -> int | float:
        return self.value


ToolValue = Annotated[Union[StringValue, NumberValue], Field(discriminator="kind")]


class ToolInvocationResult(BaseModel):
    """Outcome of one tool call, as shown to the model and persisted."""

    tool: str
    call_id: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    success: bool
    raw_result: Any = None

    def model_content(self) -> str:
        """Render the result for the ``tool`` turn sent back to the model."""

        return json.dumps(
            {"success": self.success, "result": self.raw_result}, default=str
        )

    @property
    def summary(self) -> str:
        return "Tool executed successfully." if self.success else "The API returned an error"
