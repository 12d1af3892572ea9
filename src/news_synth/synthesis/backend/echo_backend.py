"""Deterministic offline backend for local smoke runs."""

from __future__ import annotations


class EchoCompletionBackend:
    """Return the user prompt unchanged; no network access."""

    async def complete(self, *, system_prompt: str, user_prompt: str, model: str) -> str:
        del system_prompt, model
        return user_prompt.strip()

    async def aclose(self) -> None:
        return None
