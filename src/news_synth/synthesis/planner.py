"""Planning pass: one completion call that fixes the article structure.

The model's free-text answer is parsed and repaired here and nowhere else:
whatever comes back, the returned ``ArticlePlan`` has a full 1..N ordering,
a heading for every item and exactly three excerpt bullets.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Mapping, Sequence
from types import MappingProxyType
from typing import Any

from news_synth.errors import ExternalCallFailure
from news_synth.synthesis.backend.base import TextCompletion
from news_synth.synthesis.models import (
    EXCERPT_BULLET_COUNT,
    EXCERPT_BULLET_MAX_CHARS,
    ArticlePlan,
    PipelineItem,
)
from news_synth.synthesis.prompts import (
    FALLBACK_CATEGORY,
    FALLBACK_INTRO,
    FALLBACK_THESIS,
    FALLBACK_TITLE,
    PLANNER_ITEM_TEMPLATE,
    PLANNER_PREVIEW_CHARS,
    PLANNER_SYSTEM_PROMPT,
    PLANNER_USER_PROMPT,
)

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_BULLET_PREFIX = re.compile(r"^[\s•\-*]+")
_PLACEHOLDER_BULLET = "..."


class ArticlePlanner:
    """Issue the planning call and always hand back a usable plan."""

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

    async def plan(self, items: Sequence[PipelineItem]) -> ArticlePlan:
        if not items:
            return default_plan(items)
        try:
            raw = await asyncio.wait_for(
                self._completion.complete(
                    system_prompt=PLANNER_SYSTEM_PROMPT,
                    user_prompt=build_planner_prompt(items),
                    model=self._model,
                ),
                timeout=self._timeout,
            )
            return parse_plan(raw, items)
        except ExternalCallFailure as exc:
            logger.warning("Planner output unusable, using default plan: %s", exc)
        except TimeoutError:
            logger.warning("Planner call timed out after %ss, using default plan", self._timeout)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Planner call failed, using default plan: %s", exc)
        return default_plan(items)


def build_planner_prompt(items: Sequence[PipelineItem]) -> str:
    item_list = "\n\n".join(
        PLANNER_ITEM_TEMPLATE.format(
            index=index,
            title=item.title,
            source=item.source_label,
            preview=(item.content or "")[:PLANNER_PREVIEW_CHARS].replace("\n", " "),
        )
        for index, item in enumerate(items, start=1)
    )
    return PLANNER_USER_PROMPT.format(item_count=len(items), item_list=item_list)


def parse_plan(raw: str, items: Sequence[PipelineItem]) -> ArticlePlan:
    """Parse a planner response and repair it against the run's items."""

    payload = extract_json_object(raw)
    return repair_plan(payload, items)


def extract_json_object(raw: str) -> dict[str, Any]:
    """Pull the JSON object out of a response wrapped in fences or prose."""

    text = (raw or "").strip()
    if not text:
        raise ExternalCallFailure("planner", "empty response")

    direct = _try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        payload = _try_load_dict(text[start : end + 1])
        if payload is not None:
            return payload
    raise ExternalCallFailure("planner", "no JSON object found in response")


def repair_plan(payload: Mapping[str, Any], items: Sequence[PipelineItem]) -> ArticlePlan:
    count = len(items)
    return ArticlePlan(
        thesis=_text(payload.get("thesis"), FALLBACK_THESIS),
        ordering=_repair_ordering(payload.get("ordering"), count),
        headings=_repair_headings(payload.get("headings"), items),
        title=_text(payload.get("articleTitle", payload.get("title")), FALLBACK_TITLE),
        excerpt_bullets=_repair_bullets(payload.get("excerptBullets"), items),
        category=_text(payload.get("category"), FALLBACK_CATEGORY),
        intro_paragraph=_text(payload.get("introParagraph"), FALLBACK_INTRO),
    )


def default_plan(items: Sequence[PipelineItem]) -> ArticlePlan:
    """Deterministic plan: natural order, titles as headings, generic framing."""

    return ArticlePlan(
        thesis=FALLBACK_THESIS,
        ordering=tuple(range(1, len(items) + 1)),
        headings=MappingProxyType({index: item.title for index, item in enumerate(items, 1)}),
        title=FALLBACK_TITLE,
        excerpt_bullets=_repair_bullets(None, items),
        category=FALLBACK_CATEGORY,
        intro_paragraph=FALLBACK_INTRO,
        is_fallback=True,
    )


def _repair_ordering(raw: object, count: int) -> tuple[int, ...]:
    ordering: list[int] = []
    seen: set[int] = set()
    for value in raw if isinstance(raw, list) else []:
        index = _as_index(value)
        if index is None or not 1 <= index <= count or index in seen:
            continue
        seen.add(index)
        ordering.append(index)
    missing = [index for index in range(1, count + 1) if index not in seen]
    if missing and ordering:
        logger.warning("Planner ordering missed items %s; appending in natural order", missing)
    return tuple(ordering + missing)


def _repair_headings(raw: object, items: Sequence[PipelineItem]) -> Mapping[int, str]:
    headings = {index: item.title for index, item in enumerate(items, start=1)}
    if isinstance(raw, dict):
        for key, value in raw.items():
            index = _as_index(key)
            if index in headings and isinstance(value, str) and value.strip():
                headings[index] = value.strip()
    return MappingProxyType(headings)


def _repair_bullets(raw: object, items: Sequence[PipelineItem]) -> tuple[str, ...]:
    bullets: list[str] = []
    for value in raw if isinstance(raw, list) else []:
        if not isinstance(value, str):
            continue
        cleaned = _BULLET_PREFIX.sub("", value).strip()
        if cleaned:
            bullets.append(cleaned)
    while len(bullets) < EXCERPT_BULLET_COUNT:
        position = len(bullets)
        if position < len(items):
            bullets.append(items[position].title[:EXCERPT_BULLET_MAX_CHARS])
        else:
            bullets.append(_PLACEHOLDER_BULLET)
    return tuple(bullets[:EXCERPT_BULLET_COUNT])


def _as_index(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _text(value: object, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
