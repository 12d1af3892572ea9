"""Pipeline orchestration: plan once, write concurrently, emit in planned order.

Workers pull planned positions from a shared cursor and finish out of order.
The consumer walks the slot array from position 0 and waits on each slot's
event before emitting it, so events always arrive in document order while
later sections keep generating in the background.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence

from news_synth.synthesis.backend.base import TextCompletion
from news_synth.synthesis.models import (
    ArticlePlan,
    PipelineEvent,
    PipelineEventKind,
    PipelineItem,
    Section,
    SynthesisResult,
)
from news_synth.synthesis.planner import ArticlePlanner
from news_synth.synthesis.writer import SectionWriter, error_section

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3


class _WorkCursor:
    """Shared cursor over planned positions, plus the set already claimed."""

    def __init__(self, total: int) -> None:
        self._total = total
        self._next = 0
        self.claimed: set[int] = set()

    def claim(self) -> int | None:
        # No await between read and increment, so tasks cannot interleave here.
        while self._next < self._total:
            position = self._next
            self._next += 1
            if position in self.claimed:
                continue
            self.claimed.add(position)
            return position
        return None


class _SectionSlot:
    __slots__ = ("done", "section")

    def __init__(self) -> None:
        self.done = asyncio.Event()
        self.section: Section | None = None

    def fill(self, section: Section) -> None:
        if self.done.is_set():
            raise RuntimeError(f"slot for position {section.position} written twice")
        self.section = section
        self.done.set()

    async def wait(self) -> Section:
        await self.done.wait()
        if self.section is None:
            raise RuntimeError("slot signalled without a section")
        return self.section


class SynthesisPipeline:
    """Run the planner and a bounded pool of section writers over one item set."""

    def __init__(
        self,
        completion: TextCompletion,
        *,
        model: str,
        planner_model: str | None = None,
        timeout_seconds: float | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        _validate_concurrency(concurrency)
        self._completion = completion
        self._model = model
        self._timeout = timeout_seconds
        self._concurrency = concurrency
        self._planner = ArticlePlanner(
            completion,
            model=planner_model or model,
            timeout_seconds=timeout_seconds,
        )

    async def run(
        self,
        items: Sequence[PipelineItem],
        *,
        instructions: str | None = None,
        model: str | None = None,
        concurrency: int | None = None,
    ) -> AsyncIterator[PipelineEvent]:
        items = list(items)
        if not items:
            raise ValueError("pipeline needs at least one item")
        workers = self._concurrency if concurrency is None else concurrency
        _validate_concurrency(workers)
        total = len(items)

        yield PipelineEvent(
            PipelineEventKind.PLANNING_STARTED,
            message=f"Planning article for {total} items",
            total=total,
        )
        plan = await self._planner.plan(items)
        yield PipelineEvent(
            PipelineEventKind.PLANNED,
            message="Default plan" if plan.is_fallback else "Plan ready",
            total=total,
            title=plan.title,
            plan=plan,
        )
        metadata = render_metadata_block(plan)
        yield PipelineEvent(
            PipelineEventKind.METADATA_READY,
            total=total,
            title=plan.title,
            text=metadata,
            plan=plan,
        )

        writer = SectionWriter(
            self._completion,
            model=model or self._model,
            timeout_seconds=self._timeout,
        )
        slots = [_SectionSlot() for _ in range(total)]
        cursor = _WorkCursor(total)
        tasks = [
            asyncio.create_task(self._drain(cursor, slots, plan, items, writer, instructions))
            for _ in range(min(workers, total))
        ]
        logger.info("Writing %d sections with %d workers", total, len(tasks))

        texts: list[str] = []
        try:
            for position in range(total):
                index = plan.ordering[position]
                yield PipelineEvent(
                    PipelineEventKind.WRITING_STARTED,
                    position=position,
                    total=total,
                    title=plan.heading_for(index, items[index - 1]),
                )
                section = await slots[position].wait()
                texts.append(section.text)
                yield PipelineEvent(
                    PipelineEventKind.SECTION_READY,
                    position=position,
                    total=total,
                    title=section.heading,
                    text=section.text,
                    section=section,
                )
                yield PipelineEvent(
                    PipelineEventKind.WRITTEN,
                    message=f"{position + 1}/{total}",
                    position=position,
                    total=total,
                )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        yield PipelineEvent(
            PipelineEventKind.ASSEMBLED,
            total=total,
            title=plan.title,
            text=assemble_document(metadata, texts),
            plan=plan,
        )

    async def _drain(  # noqa: PLR0913
        self,
        cursor: _WorkCursor,
        slots: list[_SectionSlot],
        plan: ArticlePlan,
        items: list[PipelineItem],
        writer: SectionWriter,
        instructions: str | None,
    ) -> None:
        while True:
            position = cursor.claim()
            if position is None:
                return
            index = plan.ordering[position]
            item = items[index - 1]
            heading = plan.heading_for(index, item)
            try:
                text, error = await writer.write_section(
                    item,
                    heading=heading,
                    thesis=plan.thesis,
                    instructions=instructions,
                )
            except Exception as exc:  # noqa: BLE001
                # An unfilled slot would stall the consumer forever.
                error = str(exc) or type(exc).__name__
                logger.warning("Writer crashed at position %d: %s", position, error)
                text = error_section(heading, error)
            slots[position].fill(
                Section(
                    position=position,
                    item_index=index,
                    item_id=item.item_id,
                    heading=heading,
                    text=text,
                    failed=error is not None,
                    error=error,
                )
            )


async def synthesize(
    pipeline: SynthesisPipeline,
    items: Sequence[PipelineItem],
    *,
    instructions: str | None = None,
    model: str | None = None,
    concurrency: int | None = None,
    on_event: Callable[[PipelineEvent], None] | None = None,
) -> SynthesisResult:
    """Drive a full run and collect it into a ``SynthesisResult``."""

    plan: ArticlePlan | None = None
    sections: list[Section] = []
    document = ""
    async for event in pipeline.run(
        items,
        instructions=instructions,
        model=model,
        concurrency=concurrency,
    ):
        if on_event is not None:
            on_event(event)
        if event.kind is PipelineEventKind.PLANNED and event.plan is not None:
            plan = event.plan
        elif event.kind is PipelineEventKind.SECTION_READY and event.section is not None:
            sections.append(event.section)
        elif event.kind is PipelineEventKind.ASSEMBLED:
            document = event.text or ""
    if plan is None:
        raise RuntimeError("pipeline finished without a plan")
    result = SynthesisResult(plan=plan, sections=sections, document=document)
    failed = result.failed_positions
    if failed:
        logger.warning("Sections at positions %s were replaced by stand-ins", failed)
    return result


def render_metadata_block(plan: ArticlePlan) -> str:
    bullets = "\n".join(f"• {bullet}" for bullet in plan.excerpt_bullets)
    return (
        "---\n"
        f"TITLE: {plan.title}\n"
        "EXCERPT:\n"
        f"{bullets}\n"
        f"CATEGORY: {plan.category}\n"
        "---\n\n"
        f"{plan.intro_paragraph}\n\n"
    )


def assemble_document(metadata: str, section_texts: Sequence[str]) -> str:
    return metadata + "\n\n".join(text.strip() for text in section_texts) + "\n"


def _validate_concurrency(value: int) -> None:
    if value <= 0:
        raise ValueError("concurrency must be positive")
