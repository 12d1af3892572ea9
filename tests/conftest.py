"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from news_synth.queue.models import CandidateItemCreate, ItemScores
from news_synth.queue.repository import QueueRepository
from news_synth.synthesis.models import PipelineItem
from news_synth.synthesis.prompts import PLANNER_SYSTEM_PROMPT


class FrozenClock:
    """Manually advanced clock injected into repositories."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 17, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ScriptedCompletion:
    """Fake completion backend keyed by substrings of the user prompt.

    The planner call is recognised by its system prompt. Section calls pick
    the first ``sections`` key found in the prompt; values may be text or an
    exception instance to raise. ``delays`` uses the same keys.
    """

    def __init__(
        self,
        *,
        plan: str | BaseException = "{}",
        sections: dict[str, str | BaseException] | None = None,
        delays: dict[str, float] | None = None,
        plan_delay: float = 0.0,
    ) -> None:
        self.plan = plan
        self.sections = sections or {}
        self.delays = delays or {}
        self.plan_delay = plan_delay
        self.planner_calls: list[str] = []
        self.section_calls: list[str] = []
        self.completion_order: list[str] = []
        self.models: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def complete(self, *, system_prompt: str, user_prompt: str, model: str) -> str:
        self.models.append(model)
        if system_prompt == PLANNER_SYSTEM_PROMPT:
            self.planner_calls.append(user_prompt)
            if self.plan_delay:
                await asyncio.sleep(self.plan_delay)
            if isinstance(self.plan, BaseException):
                raise self.plan
            return self.plan

        self.section_calls.append(user_prompt)
        key = next((key for key in self.sections if key in user_prompt), None)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(key or "", 0.0))
        finally:
            self.in_flight -= 1
        self.completion_order.append(key or "")
        answer = self.sections.get(key or "", "Generated text.")
        if isinstance(answer, BaseException):
            raise answer
        return answer

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def make_repository(tmp_path: Path, clock: FrozenClock) -> Iterator[Callable[..., QueueRepository]]:
    created: list[QueueRepository] = []

    def _make(db_name: str = "queue.db", **kwargs: object) -> QueueRepository:
        kwargs.setdefault("clock", clock)
        repository = QueueRepository(tmp_path / db_name, **kwargs)  # type: ignore[arg-type]
        repository.init_schema()
        created.append(repository)
        return repository

    yield _make
    for repository in created:
        repository.close()


@pytest.fixture()
def repository(make_repository: Callable[..., QueueRepository]) -> QueueRepository:
    return make_repository()


def candidate(
    title: str,
    source: str = "news@example.com",
    *,
    score: float = 1.0,
    **kwargs: object,
) -> CandidateItemCreate:
    return CandidateItemCreate(
        title=title,
        source_identifier=source,
        content=kwargs.pop("content", f"Body of {title}"),  # type: ignore[arg-type]
        scores=ItemScores(synthesis=score),
        **kwargs,  # type: ignore[arg-type]
    )


def pipeline_item(title: str, *, source: str = "news@example.com") -> PipelineItem:
    return PipelineItem(
        item_id=f"id-{title.lower()}",
        title=title,
        content=f"Body of {title}",
        source_identifier=source,
    )


@pytest.fixture()
def make_candidate() -> Callable[..., CandidateItemCreate]:
    return candidate


@pytest.fixture()
def make_pipeline_item() -> Callable[..., PipelineItem]:
    return pipeline_item


@pytest.fixture()
def scripted_completion() -> type[ScriptedCompletion]:
    return ScriptedCompletion
