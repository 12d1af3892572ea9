from __future__ import annotations

import asyncio
import json

import allure
import httpx
import pytest

from news_synth.synthesis.backend import (
    CompletionError,
    EchoCompletionBackend,
    OpenAiCompatibleBackend,
)

pytestmark = [
    allure.epic("Article Synthesis"),
    allure.feature("Completion Backends"),
]


def _complete(handler, **kwargs: object) -> str:  # noqa: ANN001
    async def _run() -> str:
        async with OpenAiCompatibleBackend(
            base_url="https://llm.example.com/v1/",
            api_key="secret",
            transport=httpx.MockTransport(handler),
            **kwargs,  # type: ignore[arg-type]
        ) as backend:
            return await backend.complete(
                system_prompt="system",
                user_prompt="user",
                model="test-model",
            )

    return asyncio.run(_run())


def test_posts_chat_completion_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "Hello."}}]})

    assert _complete(handler, max_tokens=321) == "Hello."

    [request] = seen
    assert request.method == "POST"
    assert str(request.url) == "https://llm.example.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body == {
        "model": "test-model",
        "max_tokens": 321,
        "messages": [
            {"role": "system", "content": "system"},
            {"role": "user", "content": "user"},
        ],
    }


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(429, text="rate limited"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, json={"choices": [{"message": {"content": "   "}}]}),
        httpx.Response(200, json={"choices": [{"message": {"content": None}}]}),
    ],
)
def test_unusable_responses_raise_completion_error(response: httpx.Response) -> None:
    with pytest.raises(CompletionError):
        _complete(lambda _request: response)


def test_transport_errors_raise_completion_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(CompletionError, match="connection refused"):
        _complete(handler)


def test_timeouts_raise_completion_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(CompletionError, match="timed out"):
        _complete(handler)


def test_echo_backend_returns_user_prompt() -> None:
    backend = EchoCompletionBackend()

    text = asyncio.run(backend.complete(system_prompt="s", user_prompt="  body \n", model="m"))

    assert text == "body"
