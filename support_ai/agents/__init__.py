"""Model clients, prompts and the response orchestrator."""

from .model import (
    ModelClient,
    ModelProviderError,
    ModelResponse,
    OpenAIChatModel,
    SandboxChatModel,
    ToolCall,
    build_model_client,
)
from .orchestrator import FALLBACK_REPLY, ResponseOrchestrator, TurnOutcome

__all__ = [
    "FALLBACK_REPLY",
    "ModelClient",
    "ModelProviderError",
    "ModelResponse",
    "OpenAIChatModel",
    "ResponseOrchestrator",
    "SandboxChatModel",
    "ToolCall",
    "TurnOutcome",
    "build_model_client",
]
