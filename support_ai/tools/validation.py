"""Validate and coerce model-supplied tool arguments."""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from .schemas import NumberValue, ParameterType, StringValue, Tool, ToolParameter


class ToolValidationError(ValueError):
    """Raised when arguments do not satisfy a tool's parameter declaration."""

    def __init__(self, tool: str, errors: list[str]):
        self.tool = tool
        self.errors = errors
        super().__init__(f"Invalid arguments for {tool}: {'; '.join(errors)}")


def _coerce_number(param: ToolParameter, value: Any) -> NumberValue:
    if isinstance(value, bool):
        raise ValueError(f"{param.name} must be a number")
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            # Integers are parsed exactly; float() loses digits past 2**53.
            number = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError as exc:
                raise ValueError(f"{param.name} must be a number, got {value!r}") from exc
    else:
        raise ValueError(f"{param.name} must be a number")
    if isinstance(number, float):
        if not math.isfinite(number):
            raise ValueError(f"{param.name} must be a finite number")
        if number.is_integer():
            number = int(number)
    return NumberValue(value=number)


def _coerce_string(param: ToolParameter, value: Any) -> StringValue:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValueError(f"{param.name} must be a string")
    return StringValue(value=str(value))


def validate_parameters(
    tool: Tool, arguments: Mapping[str, Any] | None
) -> dict[str, StringValue | NumberValue]:
    """Return typed values for the declared parameters of ``tool``.

    Names the tool does not declare are dropped. Missing required values and
    values that cannot be coerced to the declared type are collected and
    reported together in a single :class:`ToolValidationError`.
    """

    arguments = arguments or {}
    values: dict[str, StringValue | NumberValue] = {}
    errors: list[str] = []
    for param in tool.parameters:
        value = arguments.get(param.name)
        if value is None or value == "":
            if param.required:
                errors.append(f"{param.name} is required")
            continue
        try:
            if param.type is ParameterType.NUMBER:
                values[param.name] = _coerce_number(param, value)
            else:
                values[param.name] = _coerce_string(param, value)
        except ValueError as exc:
            errors.append(str(exc))
    if errors:
        raise ToolValidationError(tool.slug, errors)
    return values
