"""Section writing: one completion call per planned position."""

from __future__ import annotations

import asyncio
import logging

from news_synth.synthesis.backend.base import TextCompletion
from news_synth.synthesis.models import PipelineItem
from news_synth.synthesis.prompts import (
    DEFAULT_SECTION_INSTRUCTIONS,
    SECTION_SYSTEM_PROMPT,
    SECTION_USER_PROMPT,
)

logger = logging.getLogger(__name__)


class SectionWriter:
    """Write a single section; never raises for a failed or empty call."""

    def __init__(
        self,
        completion: TextCompletion,
        *,
        model: str,
        timeout_seconds: float | None = None,
    ) -> None:
        self._completion = completion
        self._model = model
        self._timeout = timeout_seconds

    async def write_section(
        self,
        item: PipelineItem,
        *,
        heading: str,
        thesis: str,
        instructions: str | None = None,
    ) -> tuple[str, str | None]:
        """Return ``(text, error)``; ``error`` is set when a stand-in was produced."""

        prompt = build_section_prompt(
            item,
            heading=heading,
            thesis=thesis,
            instructions=instructions,
        )
        try:
            raw = await asyncio.wait_for(
                self._completion.complete(
                    system_prompt=SECTION_SYSTEM_PROMPT,
                    user_prompt=prompt,
                    model=self._model,
                ),
                timeout=self._timeout,
            )
        except TimeoutError:
            error = f"timed out after {self._timeout}s"
            logger.warning("Section '%s' (item %s) %s", heading, item.item_id, error)
            return error_section(heading, error), error
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or type(exc).__name__
            logger.warning("Section '%s' (item %s) failed: %s", heading, item.item_id, error)
            return error_section(heading, error), error

        if raw is not None and not isinstance(raw, str):
            error = f"unexpected response type {type(raw).__name__}"
            logger.warning("Section '%s' (item %s): %s", heading, item.item_id, error)
            return error_section(heading, error), error
        text = (raw or "").strip()
        if not text:
            error = "empty response"
            logger.warning("Section '%s' (item %s) came back empty", heading, item.item_id)
            return error_section(heading, error), error
        return ensure_heading(text, heading), None


def build_section_prompt(
    item: PipelineItem,
    *,
    heading: str,
    thesis: str,
    instructions: str | None = None,
) -> str:
    source = item.source_label
    if item.source_url:
        source_url_hint = f", URL: {item.source_url}"
        source_tag = f"(Source: [{source}]({item.source_url}))"
    else:
        source_url_hint = ""
        source_tag = f"(Source: {source})"
    return SECTION_USER_PROMPT.format(
        instructions=(instructions or "").strip() or DEFAULT_SECTION_INSTRUCTIONS,
        thesis=thesis,
        source=source,
        source_url_hint=source_url_hint,
        content=item.content or item.title,
        heading=heading,
        source_tag=source_tag,
    )


def ensure_heading(text: str, heading: str) -> str:
    if text.startswith("##"):
        return text
    return f"## {heading}\n\n{text}"


def error_section(heading: str, error: str) -> str:
    return f"## {heading}\n\n*Section unavailable: {error}*"
