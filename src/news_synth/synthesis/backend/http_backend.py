"""OpenAI-compatible chat completions backend over httpx."""

from __future__ import annotations

import logging

import httpx

from news_synth.synthesis.backend.base import CompletionError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_MAX_TOKENS = 2048


class OpenAiCompatibleBackend:
    """Async client for any endpoint speaking the ``/chat/completions`` dialect."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._max_tokens = max_tokens
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.AsyncHTTPTransport(retries=max_retries),
        )

    async def complete(self, *, system_prompt: str, user_prompt: str, model: str) -> str:
        payload = {
            "model": model,
            "max_tokens": self._max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        try:
            response = await self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Completion request timed out (model=%s)", model)
            raise CompletionError("completion request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("Completion request failed (model=%s): %s", model, exc)
            raise CompletionError(str(exc)) from exc

        if not response.is_success:
            raise CompletionError(f"HTTP {response.status_code}: {response.text[:200]}")
        return _extract_message_text(response)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> OpenAiCompatibleBackend:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


def _extract_message_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError as exc:
        raise CompletionError("completion response is not JSON") from exc
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise CompletionError("completion response has no message content") from exc
    if not isinstance(content, str) or not content.strip():
        raise CompletionError("completion response is empty")
    return content
