"""Prefect flow for scheduled synthesis cycles.

Housekeeping and reservation are storage-only and retried on transient
failures; generation is not retried because it owns the reservation and
releases it on error.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from prefect import flow, task

from news_synth.config import Settings
from news_synth.queue.models import SelectResult
from news_synth.queue.repository import QueueRepository
from news_synth.synthesis.backend.base import TextCompletion
from news_synth.synthesis.service import (
    CycleResult,
    HousekeepingResult,
    SynthesisService,
)

logger = logging.getLogger(__name__)

_STORAGE_RETRIES = 2
_STORAGE_RETRY_DELAY = 5


@task(retries=_STORAGE_RETRIES, retry_delay_seconds=_STORAGE_RETRY_DELAY)
def housekeeping_task(service: SynthesisService) -> HousekeepingResult:
    return service.housekeeping()


@task(retries=_STORAGE_RETRIES, retry_delay_seconds=_STORAGE_RETRY_DELAY)
def reserve_task(service: SynthesisService, max_items: int) -> SelectResult:
    return service.reserve_balanced(max_items)


@task
def generate_task(  # noqa: PLR0913
    service: SynthesisService,
    reservation: SelectResult,
    *,
    instructions: str | None,
    model: str | None,
    concurrency: int | None,
    dry_run: bool,
) -> CycleResult:
    return service.generate(
        reservation,
        instructions=instructions,
        model=model,
        concurrency=concurrency,
        dry_run=dry_run,
    )


@flow(name="synthesis_flow")
def synthesis_flow(  # noqa: PLR0913
    *,
    settings: Settings,
    max_items: int | None = None,
    instructions: str | None = None,
    model: str | None = None,
    concurrency: int | None = None,
    dry_run: bool = False,
    completion_factory: Callable[[], TextCompletion] | None = None,
    on_progress: Callable[[str], None] | None = None,
) -> CycleResult:
    """Run one synthesis cycle against the configured queue database."""

    repository = QueueRepository(
        settings.db_path,
        ttl=settings.queue_ttl,
        stale_after=settings.queue_stale_after,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        repository.init_schema()
        service = SynthesisService(
            repository,
            settings=settings.synthesis,
            excluded_sources=settings.queue.excluded_sources,
            completion_factory=completion_factory,
            on_progress=on_progress,
        )
        housekeeping = housekeeping_task(service)
        reservation = reserve_task(service, max_items or settings.queue.default_max_items)
        result = generate_task(
            service,
            reservation,
            instructions=instructions,
            model=model,
            concurrency=concurrency,
            dry_run=dry_run,
        )
        result.expired_count = housekeeping.expired_count
        result.stale_reset_count = housekeeping.stale_reset_count
        logger.info("Synthesis cycle finished with status %s", result.status)
        return result
    finally:
        repository.close()
