"""Prompt templates for replies, subjects and summaries."""

from __future__ import annotations

from collections.abc import Mapping

CHAT_SYSTEM_PROMPT = """You are a customer support assistant. Answer the customer's \
latest message using the knowledge bank and past conversations provided to you.

- Be concise, friendly and accurate. Never invent policies, prices or order details.
- Use the available tools to look up or change customer data when needed.
- If you cannot resolve the request, or the customer asks for a person, call \
the request_human_support tool with a short reason instead of replying.
- Reply in the same language as the customer."""

SUBJECT_PROMPT = """Write a subject line for this support conversation. \
Use at most eight words, no quotes and no trailing punctuation."""

SUMMARY_PROMPT = """Summarize this support conversation for a teammate who is \
about to take it over. Return between two and six bullet points, one per line, \
each starting with "- ". Cover the customer's problem, what has been tried and \
what is still open."""


class PromptTemplateStore:
    """Resolve prompt templates, allowing per-deployment overrides."""

    _DEFAULT_TEMPLATES: Mapping[str, str] = {
        "chat": CHAT_SYSTEM_PROMPT,
        "subject": SUBJECT_PROMPT,
        "summary": SUMMARY_PROMPT,
    }

    def __init__(self, overrides: Mapping[str, str] | None = None):
        self._templates = dict(self._DEFAULT_TEMPLATES)
        if overrides:
            self._templates.update({k: v for k, v in overrides.items() if v})

    def resolve(self, task: str) -> str:
        try:
            return self._templates[task]
        except KeyError as exc:
            raise KeyError(f"No prompt template for {task!r}") from exc

    def render_system(self, task: str, context: str | None = None) -> str:
        """Return the system prompt for ``task`` with retrieval context appended."""

        base = self.resolve(task)
        if context:
            return f"{base}\n\n{context}"
        return base
