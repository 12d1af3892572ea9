"""Controllers for synthesis CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from news_synth.config import Settings
from news_synth.queue.repository import QueueRepository
from news_synth.synthesis.prefect_flow import synthesis_flow
from news_synth.synthesis.service import CycleResult, SynthesisService


@dataclass(slots=True)
class SynthRunCommand:
    """CLI input for generating an article from explicit item ids."""

    db_path: Path | None
    item_ids: tuple[str, ...]
    instructions: str | None = None
    model: str | None = None
    concurrency: int | None = None
    backend: str | None = None
    output_dir: Path | None = None
    dry_run: bool = False


@dataclass(slots=True)
class SynthCycleCommand:
    """CLI input for one balanced queue-to-article cycle."""

    db_path: Path | None
    max_items: int | None = None
    instructions: str | None = None
    model: str | None = None
    concurrency: int | None = None
    backend: str | None = None
    output_dir: Path | None = None
    dry_run: bool = False


class SynthesisCliController:
    """Coordinates article generation CLI operations."""

    def run(
        self,
        command: SynthRunCommand,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> list[str]:
        settings = _settings(command.db_path, command.backend, command.output_dir)
        with _repository(settings) as repository:
            service = SynthesisService(
                repository,
                settings=settings.synthesis,
                excluded_sources=settings.queue.excluded_sources,
                on_progress=on_progress,
            )
            reservation = service.reserve_ids(command.item_ids)
            result = service.generate(
                reservation,
                instructions=command.instructions,
                model=command.model,
                concurrency=command.concurrency,
                dry_run=command.dry_run,
            )
        lines = [f"  not selectable: {error}" for error in reservation.errors]
        return lines + _format_cycle_result(result)

    def cycle(
        self,
        command: SynthCycleCommand,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> list[str]:
        settings = _settings(command.db_path, command.backend, command.output_dir)
        result = synthesis_flow(
            settings=settings,
            max_items=command.max_items,
            instructions=command.instructions,
            model=command.model,
            concurrency=command.concurrency,
            dry_run=command.dry_run,
            on_progress=on_progress,
        )
        lines = _format_cycle_result(result)
        if result.expired_count or result.stale_reset_count:
            lines.append(
                f"Housekeeping: expired={result.expired_count} "
                f"stale_reset={result.stale_reset_count}",
            )
        return lines


def _settings(db_path: Path | None, backend: str | None, output_dir: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    if backend is not None:
        settings.synthesis.backend = backend.strip().lower()
    if output_dir is not None:
        settings.synthesis.output_dir = output_dir
    settings.validate()
    return settings


def _format_cycle_result(result: CycleResult) -> list[str]:
    if result.status == "empty":
        return ["Nothing to write: no selectable items."]

    lines = [
        f"Article {result.article_id}: status={result.status} "
        f"items={len(result.selected_ids)} not_selectable={len(result.failed_ids)}",
    ]
    if result.synthesis is not None:
        plan = result.synthesis.plan
        lines.append(f"  Title: {plan.title}{' (default plan)' if plan.is_fallback else ''}")
        failed = result.synthesis.failed_positions
        if failed:
            lines.append(f"  Sections unavailable: {[position + 1 for position in failed]}")
    if result.output_path is not None:
        lines.append(f"  Output: {result.output_path}")
    if result.mark_used is not None and result.mark_used.failed_ids:
        lines.append(
            f"  Not marked used (reservation lost): {', '.join(result.mark_used.failed_ids)}",
        )
    return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[QueueRepository]:
    repository = QueueRepository(
        settings.db_path,
        ttl=settings.queue_ttl,
        stale_after=settings.queue_stale_after,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
