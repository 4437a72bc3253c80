"""Runtime configuration for the orchestration engine."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

PLACEHOLDER_SUBJECT = "Chat"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclasses.dataclass(frozen=True)
class EngineSettings:
    """Tunables for retrieval, the tool loop and background fanout."""

    database_url: str | None = None
    openai_model: str = "gpt-4o"
    embedding_model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
    similarity_threshold: float = 0.6
    max_knowledge_entries: int = 5
    max_past_conversations: int = 5
    embedding_cache_ttl_seconds: int = 60 * 60 * 24 * 30  # 30 days
    max_tool_iterations: int = 5
    tool_timeout_seconds: float = 15.0
    tool_error_body_limit: int = 2000
    model_timeout_seconds: float = 60.0
    model_max_retries: int = 2
    model_context_tokens: int = 128_000
    response_token_reserve: int = 4096
    summary_min_messages: int = 4
    fanout_job_stale_seconds: float = 300.0
    auto_close_on_resolution: bool = False
    chat_rate_limit: str = "20/minute"
    placeholder_subject: str = PLACEHOLDER_SUBJECT

    @property
    def context_token_budget(self) -> int:
        return max(self.model_context_tokens - self.response_token_reserve, 0)


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Load settings from the environment with development defaults."""

    defaults = EngineSettings()
    return EngineSettings(
        database_url=os.getenv("DATABASE_URL") or None,
        openai_model=os.getenv("OPENAI_MODEL", defaults.openai_model),
        embedding_model=os.getenv("EMBEDDING_MODEL", defaults.embedding_model),
        similarity_threshold=float(
            os.getenv("SIMILARITY_THRESHOLD", str(defaults.similarity_threshold))
        ),
        max_knowledge_entries=int(
            os.getenv("MAX_KNOWLEDGE_ENTRIES", str(defaults.max_knowledge_entries))
        ),
        max_past_conversations=int(
            os.getenv("MAX_PAST_CONVERSATIONS", str(defaults.max_past_conversations))
        ),
        embedding_cache_ttl_seconds=int(
            os.getenv(
                "EMBEDDING_CACHE_TTL_SECONDS", str(defaults.embedding_cache_ttl_seconds)
            )
        ),
        max_tool_iterations=int(
            os.getenv("MAX_TOOL_ITERATIONS", str(defaults.max_tool_iterations))
        ),
        tool_timeout_seconds=float(
            os.getenv("TOOL_TIMEOUT_SECONDS", str(defaults.tool_timeout_seconds))
        ),
        tool_error_body_limit=int(
            os.getenv("TOOL_ERROR_BODY_LIMIT", str(defaults.tool_error_body_limit))
        ),
        model_timeout_seconds=float(
            os.getenv("MODEL_TIMEOUT_SECONDS", str(defaults.model_timeout_seconds))
        ),
        model_max_retries=int(
            os.getenv("MODEL_MAX_RETRIES", str(defaults.model_max_retries))
        ),
        model_context_tokens=int(
            os.getenv("MODEL_CONTEXT_TOKENS", str(defaults.model_context_tokens))
        ),
        response_token_reserve=int(
            os.getenv("RESPONSE_TOKEN_RESERVE", str(defaults.response_token_reserve))
        ),
        summary_min_messages=int(
            os.getenv("SUMMARY_MIN_MESSAGES", str(defaults.summary_min_messages))
        ),
        fanout_job_stale_seconds=float(
            os.getenv("FANOUT_JOB_STALE_SECONDS", str(defaults.fanout_job_stale_seconds))
        ),
        auto_close_on_resolution=_env_bool(
            "AUTO_CLOSE_ON_RESOLUTION", defaults.auto_close_on_resolution
        ),
        chat_rate_limit=os.getenv("CHAT_RATE_LIMIT", defaults.chat_rate_limit),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()
