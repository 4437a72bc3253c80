"""Assistant tools: declarations, argument validation and execution."""

from .registry import ToolRegistry
from .schemas import HUMAN_SUPPORT_TOOL, Tool, ToolInvocationResult, ToolParameter
from .strategies import ESCALATION_ACKNOWLEDGEMENT
from .validation import ToolValidationError, validate_parameters

__all__ = [
    "ESCALATION_ACKNOWLEDGEMENT",
    "HUMAN_SUPPORT_TOOL",
    "Tool",
    "ToolInvocationResult",
    "ToolParameter",
    "ToolRegistry",
    "ToolValidationError",
    "validate_parameters",
]
