"""Sampling parameter defaults for each kind of model call."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class ResponseParameterStore:
    """Maintain per-task completion parameters.

    Replies use a low temperature so answers stay close to the knowledge
    bank; subjects and summaries are short and get tighter token caps.
    """

    _DEFAULTS: Mapping[str, dict[str, Any]] = {
        "chat": {"temperature": 0.1, "max_tokens": 1024},
        "subject": {"temperature": 0.2, "max_tokens": 32},
        "summary": {"temperature": 0.2, "max_tokens": 400},
    }

    def __init__(self, overrides: Mapping[str, Mapping[str, Any]] | None = None):
        self._defaults: dict[str, dict[str, Any]] = {
            task: dict(params) for task, params in self._DEFAULTS.items()
        }
        if overrides:
            for task, params in overrides.items():
                self._defaults.setdefault(task.lower(), {}).update(params)

    def defaults_for(self, task: str) -> dict[str, Any]:
        return dict(self._defaults.get(task.lower(), {"temperature": 0.1}))
