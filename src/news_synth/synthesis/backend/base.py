"""Text completion interface used by the planner and section writers."""

from __future__ import annotations

from typing import Protocol


class CompletionError(RuntimeError):
    """Backend call failed or returned no usable text."""


class TextCompletion(Protocol):
    """Protocol implemented by text generation backends."""

    async def complete(self, *, system_prompt: str, user_prompt: str, model: str) -> str:
        """Return the model's text response for one system/user prompt pair."""
