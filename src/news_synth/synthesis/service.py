"""Queue-to-article cycle: housekeeping, reservation, generation, consumption."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from news_synth.config import SynthesisSettings
from news_synth.queue.balancer import SelectionBalancer
from news_synth.queue.models import CandidateItemView, MarkUsedResult, SelectResult
from news_synth.queue.repository import QueueRepository
from news_synth.synthesis.backend import (
    EchoCompletionBackend,
    OpenAiCompatibleBackend,
    TextCompletion,
)
from news_synth.synthesis.models import (
    PipelineEvent,
    PipelineEventKind,
    PipelineItem,
    SynthesisResult,
)
from news_synth.synthesis.pipeline import SynthesisPipeline, synthesize

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HousekeepingResult:
    expired_count: int
    stale_reset_count: int


@dataclass(slots=True)
class CycleResult:
    """Outcome of one synthesis cycle."""

    status: str
    article_id: str | None = None
    selected_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    expired_count: int = 0
    stale_reset_count: int = 0
    output_path: Path | None = None
    synthesis: SynthesisResult | None = None
    mark_used: MarkUsedResult | None = None


def build_completion_backend(settings: SynthesisSettings) -> TextCompletion:
    if settings.backend == "echo":
        return EchoCompletionBackend()
    return OpenAiCompatibleBackend(
        base_url=settings.api_base_url,
        api_key=settings.api_key,
        timeout_seconds=settings.call_timeout_seconds,
        max_retries=settings.http_max_retries,
    )


def new_article_id() -> str:
    return f"{datetime.now(tz=UTC):%Y%m%d-%H%M%S}-{uuid4().hex[:8]}"


class SynthesisService:
    """Run pipeline cycles against the candidate queue.

    Reserved items are always either consumed (``mark_used``) or released
    (``reset_to_pending``) before a cycle returns or raises.
    """

    def __init__(  # noqa: PLR0913
        self,
        repository: QueueRepository,
        *,
        settings: SynthesisSettings,
        excluded_sources: Sequence[str] = (),
        completion_factory: Callable[[], TextCompletion] | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._balancer = SelectionBalancer(repository, excluded_sources=excluded_sources)
        self._completion_factory = completion_factory or (
            lambda: build_completion_backend(settings)
        )
        self._emit = on_progress or (lambda _: None)

    def housekeeping(self) -> HousekeepingResult:
        stale = self._repository.reset_stale_selected()
        expired = self._repository.expire_old_items()
        if expired or stale.reset_count:
            self._emit(
                f"Housekeeping: {expired} expired, "
                f"{stale.reset_count} stale reservations released",
            )
        return HousekeepingResult(expired_count=expired, stale_reset_count=stale.reset_count)

    def reserve_balanced(self, max_items: int) -> SelectResult:
        picks = self._balancer.get_balanced_selection(max_items)
        if not picks:
            return SelectResult(items=[], failed_ids=[])
        return self._repository.select([pick.item.item_id for pick in picks])

    def reserve_ids(self, item_ids: Sequence[str]) -> SelectResult:
        return self._repository.select(item_ids)

    def run_cycle(  # noqa: PLR0913
        self,
        *,
        max_items: int,
        instructions: str | None = None,
        model: str | None = None,
        concurrency: int | None = None,
        dry_run: bool = False,
    ) -> CycleResult:
        """Release stale, expire, pick balanced, reserve, generate, consume."""

        housekeeping = self.housekeeping()
        reservation = self.reserve_balanced(max_items)
        result = self.generate(
            reservation,
            instructions=instructions,
            model=model,
            concurrency=concurrency,
            dry_run=dry_run,
        )
        result.expired_count = housekeeping.expired_count
        result.stale_reset_count = housekeeping.stale_reset_count
        return result

    def generate(  # noqa: PLR0913
        self,
        reservation: SelectResult,
        *,
        instructions: str | None = None,
        model: str | None = None,
        concurrency: int | None = None,
        dry_run: bool = False,
    ) -> CycleResult:
        """Write an article from reserved items, then consume or release them."""

        selected_ids = reservation.selected_ids
        if not selected_ids:
            self._emit("No selectable items in the queue.")
            return CycleResult(status="empty", failed_ids=list(reservation.failed_ids))

        article_id = new_article_id()
        self._emit(f"Reserved {len(selected_ids)} items for article {article_id}")
        try:
            synthesis = asyncio.run(
                self._synthesize(
                    reservation.items,
                    instructions=instructions,
                    model=model,
                    concurrency=concurrency,
                ),
            )
            output_path = self._write_document(article_id, synthesis.document)
        except BaseException:
            released = self._repository.reset_to_pending(selected_ids)
            logger.warning(
                "Article %s aborted; released %d reserved items",
                article_id,
                released.reset_count,
            )
            raise

        result = CycleResult(
            status="dry-run" if dry_run else "completed",
            article_id=article_id,
            selected_ids=selected_ids,
            failed_ids=list(reservation.failed_ids),
            output_path=output_path,
            synthesis=synthesis,
        )
        if dry_run:
            self._repository.reset_to_pending(selected_ids)
            self._emit(f"Dry run: {len(selected_ids)} items returned to the queue")
            return result

        result.mark_used = self._repository.mark_used(selected_ids, article_id)
        self._emit(f"Article {article_id} written to {output_path}")
        return result

    async def _synthesize(
        self,
        items: Sequence[CandidateItemView],
        *,
        instructions: str | None,
        model: str | None,
        concurrency: int | None,
    ) -> SynthesisResult:
        completion = self._completion_factory()
        try:
            pipeline = SynthesisPipeline(
                completion,
                model=self._settings.model,
                planner_model=self._settings.effective_planner_model,
                timeout_seconds=self._settings.call_timeout_seconds,
                concurrency=self._settings.concurrency,
            )
            return await synthesize(
                pipeline,
                [PipelineItem.from_queue_item(item) for item in items],
                instructions=instructions,
                model=model,
                concurrency=concurrency,
                on_event=self._report,
            )
        finally:
            aclose = getattr(completion, "aclose", None)
            if aclose is not None:
                await aclose()

    def _report(self, event: PipelineEvent) -> None:
        line = format_event(event)
        if line is not None:
            self._emit(line)

    def _write_document(self, article_id: str, document: str) -> Path:
        output_dir = self._settings.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / f"{article_id}.md"
        path.write_text(document, encoding="utf-8")
        return path


def format_event(event: PipelineEvent) -> str | None:
    """Render one pipeline event as a progress line, or None to stay quiet."""

    kind = event.kind
    if kind is PipelineEventKind.PLANNING_STARTED:
        return event.message
    if kind is PipelineEventKind.PLANNED:
        return f"{event.message}: {event.title}"
    if kind is PipelineEventKind.WRITING_STARTED:
        return f"[{(event.position or 0) + 1}/{event.total}] {event.title}"
    if kind is PipelineEventKind.SECTION_READY and event.section is not None:
        if event.section.failed:
            return f"  section unavailable: {event.section.error}"
        return None
    if kind is PipelineEventKind.ASSEMBLED:
        return f"Assembled '{event.title}' ({event.total} sections)"
    return None
