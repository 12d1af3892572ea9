"""CLI entrypoint for news-synth."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from news_synth import __version__
from news_synth.config import SUPPORTED_BACKENDS
from news_synth.errors import QueueError
from news_synth.queue.controllers import (
    QueueAddCommand,
    QueueBalancedCommand,
    QueueCliController,
    QueueDbCommand,
    QueueIdsCommand,
    QueueInspectCommand,
    QueueListCommand,
    QueueMarkUsedCommand,
    QueueResetStaleCommand,
    QueueSelectableCommand,
    QueueSkipCommand,
    QueueUpdateScoresCommand,
)
from news_synth.queue.models import QueueItemStatus
from news_synth.synthesis.controllers import (
    SynthCycleCommand,
    SynthesisCliController,
    SynthRunCommand,
)

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
SYNTHESIS_CONTROLLER = SynthesisCliController()

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_score = click.FloatRange(min=0)


@click.group()
@click.version_option(version=__version__, prog_name="news-synth")
def news_synth() -> None:
    """Candidate queue and article synthesis CLI."""


@news_synth.group()
def queue() -> None:
    """Candidate queue commands."""


@queue.command("add")
@_db_path_option
@click.option("--title", default=None, help="Item title.")
@click.option("--source", default=None, help="Sender, e.g. `Name <news@example.com>`.")
@click.option("--url", default=None, help="Article URL; used as source when no sender is given.")
@click.option("--content", default=None, help="Full item text.")
@click.option("--excerpt", default=None, help="Short excerpt.")
@click.option("--external-ref", default=None, help="Upstream id used for deduplication.")
@click.option("--synthesis-score", type=_score, default=0.0, show_default=True)
@click.option("--relevance-score", type=_score, default=0.0, show_default=True)
@click.option("--uniqueness-score", type=_score, default=0.0, show_default=True)
@click.option(
    "--from-json",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Enqueue a JSON object or list of objects instead of a single item.",
)
def queue_add(  # noqa: PLR0913
    db_path: Path | None,
    title: str | None,
    source: str | None,
    url: str | None,
    content: str | None,
    excerpt: str | None,
    external_ref: str | None,
    synthesis_score: float,
    relevance_score: float,
    uniqueness_score: float,
    from_json: Path | None,
) -> None:
    """Add candidate items as pending; duplicates are skipped."""

    _run(
        QUEUE_CONTROLLER.add,
        QueueAddCommand(
            db_path=db_path,
            title=title,
            source=source,
            url=url,
            content=content,
            excerpt=excerpt,
            external_ref=external_ref,
            synthesis_score=synthesis_score,
            relevance_score=relevance_score,
            uniqueness_score=uniqueness_score,
            from_json=from_json,
        ),
    )


@queue.command("list")
@_db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in QueueItemStatus]),
    default=QueueItemStatus.PENDING.value,
    show_default=True,
)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
def queue_list(db_path: Path | None, status: str, limit: int, offset: int) -> None:
    """List items of one status, highest score first."""

    _run(
        QUEUE_CONTROLLER.list_items,
        QueueListCommand(db_path=db_path, status=status, limit=limit, offset=offset),
    )


@queue.command("selectable")
@_db_path_option
@click.option("--source", default=None, help="Only items of this source identifier.")
@click.option("--limit", type=click.IntRange(min=1), default=None)
def queue_selectable(db_path: Path | None, source: str | None, limit: int | None) -> None:
    """List pending, unexpired items."""

    _run(
        QUEUE_CONTROLLER.selectable,
        QueueSelectableCommand(db_path=db_path, source=source, limit=limit),
    )


@queue.command("balanced")
@_db_path_option
@click.option("--max-items", type=click.IntRange(min=1), default=None)
def queue_balanced(db_path: Path | None, max_items: int | None) -> None:
    """Preview a source-balanced selection without reserving it."""

    _run(
        QUEUE_CONTROLLER.balanced,
        QueueBalancedCommand(db_path=db_path, max_items=max_items),
    )


@queue.command("select")
@_db_path_option
@click.argument("item_ids", nargs=-1, required=True)
def queue_select(db_path: Path | None, item_ids: tuple[str, ...]) -> None:
    """Atomically reserve items for an article."""

    _run(QUEUE_CONTROLLER.select, QueueIdsCommand(db_path=db_path, item_ids=item_ids))


@queue.command("mark-used")
@_db_path_option
@click.option("--article-id", required=True, help="Article that consumed the items.")
@click.argument("item_ids", nargs=-1, required=True)
def queue_mark_used(db_path: Path | None, article_id: str, item_ids: tuple[str, ...]) -> None:
    """Mark reserved items as used by an article."""

    _run(
        QUEUE_CONTROLLER.mark_used,
        QueueMarkUsedCommand(db_path=db_path, item_ids=item_ids, article_id=article_id),
    )


@queue.command("skip")
@_db_path_option
@click.option("--reason", required=True, help="Why the items are dropped.")
@click.argument("item_ids", nargs=-1, required=True)
def queue_skip(db_path: Path | None, reason: str, item_ids: tuple[str, ...]) -> None:
    """Drop pending items permanently."""

    _run(
        QUEUE_CONTROLLER.skip,
        QueueSkipCommand(db_path=db_path, item_ids=item_ids, reason=reason),
    )


@queue.command("expire")
@_db_path_option
def queue_expire(db_path: Path | None) -> None:
    """Expire pending items past their TTL."""

    _run(QUEUE_CONTROLLER.expire, QueueDbCommand(db_path=db_path))


@queue.command("reset")
@_db_path_option
@click.argument("item_ids", nargs=-1, required=True)
def queue_reset(db_path: Path | None, item_ids: tuple[str, ...]) -> None:
    """Return reserved items to pending."""

    _run(QUEUE_CONTROLLER.reset, QueueIdsCommand(db_path=db_path, item_ids=item_ids))


@queue.command("reset-stale")
@_db_path_option
@click.option(
    "--hours",
    "stale_after_hours",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Override the stale threshold (NEWS_SYNTH_QUEUE_STALE_AFTER_HOURS).",
)
def queue_reset_stale(db_path: Path | None, stale_after_hours: float | None) -> None:
    """Release reservations older than the stale threshold."""

    _run(
        QUEUE_CONTROLLER.reset_stale,
        QueueResetStaleCommand(db_path=db_path, stale_after_hours=stale_after_hours),
    )


@queue.command("update-scores")
@_db_path_option
@click.argument("item_id")
@click.option("--synthesis-score", type=_score, required=True)
@click.option("--relevance-score", type=_score, required=True)
@click.option("--uniqueness-score", type=_score, required=True)
def queue_update_scores(
    db_path: Path | None,
    item_id: str,
    synthesis_score: float,
    relevance_score: float,
    uniqueness_score: float,
) -> None:
    """Overwrite an item's scores."""

    _run(
        QUEUE_CONTROLLER.update_scores,
        QueueUpdateScoresCommand(
            db_path=db_path,
            item_id=item_id,
            synthesis_score=synthesis_score,
            relevance_score=relevance_score,
            uniqueness_score=uniqueness_score,
        ),
    )


@queue.command("stats")
@_db_path_option
def queue_stats(db_path: Path | None) -> None:
    """Show item counts by status."""

    _run(QUEUE_CONTROLLER.stats, QueueDbCommand(db_path=db_path))


@queue.command("distribution")
@_db_path_option
def queue_distribution(db_path: Path | None) -> None:
    """Show selectable item counts per source."""

    _run(QUEUE_CONTROLLER.distribution, QueueDbCommand(db_path=db_path))


@queue.command("inspect")
@_db_path_option
@click.argument("item_id")
def queue_inspect(db_path: Path | None, item_id: str) -> None:
    """Show one item with its audit trail."""

    _run(QUEUE_CONTROLLER.inspect, QueueInspectCommand(db_path=db_path, item_id=item_id))


@queue.command("clear")
@_db_path_option
@click.confirmation_option(prompt="Delete all pending items?")
def queue_clear(db_path: Path | None) -> None:
    """Delete every pending item."""

    _run(QUEUE_CONTROLLER.clear, QueueDbCommand(db_path=db_path))


@news_synth.group()
def synth() -> None:
    """Article synthesis commands."""


_instructions_option = click.option(
    "--instructions",
    default=None,
    help="Extra writing instructions for every section.",
)
_model_option = click.option("--model", default=None, help="Section writer model override.")
_concurrency_option = click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Concurrent section writers (NEWS_SYNTH_CONCURRENCY).",
)
_backend_option = click.option(
    "--backend",
    type=click.Choice(SUPPORTED_BACKENDS),
    default=None,
    help="Completion backend override (NEWS_SYNTH_BACKEND).",
)
_output_dir_option = click.option(
    "--output-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Where Markdown articles are written (NEWS_SYNTH_OUTPUT_DIR).",
)
_dry_run_option = click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Write the article but return the items to the queue.",
)


@synth.command("run")
@_db_path_option
@_instructions_option
@_model_option
@_concurrency_option
@_backend_option
@_output_dir_option
@_dry_run_option
@click.argument("item_ids", nargs=-1, required=True)
def synth_run(  # noqa: PLR0913
    db_path: Path | None,
    instructions: str | None,
    model: str | None,
    concurrency: int | None,
    backend: str | None,
    output_dir: Path | None,
    dry_run: bool,
    item_ids: tuple[str, ...],
) -> None:
    """Reserve the given items and write one article from them."""

    _run_with_progress(
        SYNTHESIS_CONTROLLER.run,
        SynthRunCommand(
            db_path=db_path,
            item_ids=item_ids,
            instructions=instructions,
            model=model,
            concurrency=concurrency,
            backend=backend,
            output_dir=output_dir,
            dry_run=dry_run,
        ),
    )


@synth.command("cycle")
@_db_path_option
@click.option("--max-items", type=click.IntRange(min=1), default=None)
@_instructions_option
@_model_option
@_concurrency_option
@_backend_option
@_output_dir_option
@_dry_run_option
def synth_cycle(  # noqa: PLR0913
    db_path: Path | None,
    max_items: int | None,
    instructions: str | None,
    model: str | None,
    concurrency: int | None,
    backend: str | None,
    output_dir: Path | None,
    dry_run: bool,
) -> None:
    """Run one scheduled cycle: housekeeping, balanced pick, article, consume."""

    _run_with_progress(
        SYNTHESIS_CONTROLLER.cycle,
        SynthCycleCommand(
            db_path=db_path,
            max_items=max_items,
            instructions=instructions,
            model=model,
            concurrency=concurrency,
            backend=backend,
            output_dir=output_dir,
            dry_run=dry_run,
        ),
    )


def _run(handler: Callable[[Any], list[str]], command: object) -> None:
    try:
        lines = handler(command)
    except (QueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _run_with_progress(
    handler: Callable[..., list[str]],
    command: object,
) -> None:
    try:
        lines = handler(command, on_progress=click.echo)
    except (QueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    news_synth()
