"""Text completion backend implementations."""

from news_synth.synthesis.backend.base import CompletionError, TextCompletion
from news_synth.synthesis.backend.echo_backend import EchoCompletionBackend
from news_synth.synthesis.backend.http_backend import OpenAiCompatibleBackend

__all__ = [
    "CompletionError",
    "EchoCompletionBackend",
    "OpenAiCompatibleBackend",
    "TextCompletion",
]
