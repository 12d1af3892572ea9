"""Controllers for candidate queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from news_synth.config import Settings
from news_synth.errors import QueueValidationError
from news_synth.queue.balancer import SelectionBalancer
from news_synth.queue.models import (
    CandidateItemCreate,
    CandidateItemView,
    ItemScores,
    QueueItemStatus,
)
from news_synth.queue.repository import QueueRepository
from news_synth.queue.sources import extract_source_display_name, normalize_source_identifier


@dataclass(slots=True)
class QueueAddCommand:
    """CLI input for enqueuing one item or a JSON batch."""

    db_path: Path | None
    title: str | None = None
    source: str | None = None
    url: str | None = None
    content: str | None = None
    excerpt: str | None = None
    external_ref: str | None = None
    synthesis_score: float = 0.0
    relevance_score: float = 0.0
    uniqueness_score: float = 0.0
    from_json: Path | None = None


@dataclass(slots=True)
class QueueListCommand:
    """CLI input for paging through items of one status."""

    db_path: Path | None
    status: str = QueueItemStatus.PENDING.value
    limit: int = 50
    offset: int = 0


@dataclass(slots=True)
class QueueSelectableCommand:
    db_path: Path | None
    source: str | None = None
    limit: int | None = None


@dataclass(slots=True)
class QueueBalancedCommand:
    db_path: Path | None
    max_items: int | None = None


@dataclass(slots=True)
class QueueIdsCommand:
    """CLI input for transitions addressed by item ids."""

    db_path: Path | None
    item_ids: tuple[str, ...]


@dataclass(slots=True)
class QueueMarkUsedCommand:
    db_path: Path | None
    item_ids: tuple[str, ...]
    article_id: str


@dataclass(slots=True)
class QueueSkipCommand:
    db_path: Path | None
    item_ids: tuple[str, ...]
    reason: str


@dataclass(slots=True)
class QueueResetStaleCommand:
    db_path: Path | None
    stale_after_hours: float | None = None


@dataclass(slots=True)
class QueueUpdateScoresCommand:
    db_path: Path | None
    item_id: str
    synthesis_score: float
    relevance_score: float
    uniqueness_score: float


@dataclass(slots=True)
class QueueInspectCommand:
    db_path: Path | None
    item_id: str


@dataclass(slots=True)
class QueueDbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


class QueueCliController:
    """Coordinates candidate queue CLI operations."""

    def add(self, command: QueueAddCommand) -> list[str]:
        items = (
            _load_batch(command.from_json)
            if command.from_json is not None
            else [_item_from_command(command)]
        )
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = repository.enqueue(items)
        lines = [
            f"Enqueued: inserted={result.inserted_count} duplicates={result.duplicate_count}",
        ]
        lines.extend(f"  {item_id}" for item_id in result.inserted_ids)
        return lines

    def list_items(self, command: QueueListCommand) -> list[str]:
        status = _parse_status(command.status)
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            items = repository.list_items(
                status=status,
                limit=command.limit,
                offset=command.offset,
            )
        return [f"Items ({status.value}): {len(items)}", *(_item_line(item) for item in items)]

    def selectable(self, command: QueueSelectableCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.source:
                items = repository.list_pending_by_source(command.source)
                if command.limit is not None:
                    items = items[: command.limit]
            else:
                items = repository.list_selectable(limit=command.limit)
        return [f"Selectable items: {len(items)}", *(_item_line(item) for item in items)]

    def balanced(self, command: QueueBalancedCommand) -> list[str]:
        """Preview a balanced selection without reserving anything."""

        settings = Settings.from_env(db_path=command.db_path)
        max_items = command.max_items or settings.queue.default_max_items
        with _repository(settings) as repository:
            balancer = SelectionBalancer(
                repository,
                excluded_sources=settings.queue.excluded_sources,
            )
            picks = balancer.get_balanced_selection(max_items)
        lines = [f"Balanced selection: {len(picks)}/{max_items}"]
        lines.extend(f"  {pick.rank:>2}. {_item_line(pick.item).strip()}" for pick in picks)
        return lines

    def select(self, command: QueueIdsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = repository.select(command.item_ids)
        lines = [f"Selected: {len(result.items)}/{len(result.items) + len(result.failed_ids)}"]
        lines.extend(f"  {item.item_id} {item.title}" for item in result.items)
        lines.extend(f"  not selectable: {error}" for error in result.errors)
        return lines

    def mark_used(self, command: QueueMarkUsedCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = repository.mark_used(command.item_ids, command.article_id)
        lines = [
            f"Marked used for {command.article_id}: updated={result.updated_count} "
            f"unchanged={len(result.unchanged_ids)} failed={len(result.failed_ids)}",
        ]
        lines.extend(f"  not selected: {item_id}" for item_id in result.failed_ids)
        return lines

    def skip(self, command: QueueSkipCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            skipped = repository.skip(command.item_ids, command.reason)
        return [f"Skipped: {skipped}/{len(command.item_ids)}"]

    def expire(self, command: QueueDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            expired = repository.expire_old_items()
        return [f"Expired: {expired}"]

    def reset(self, command: QueueIdsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = repository.reset_to_pending(command.item_ids)
        return [f"Reset to pending: {result.reset_count}/{len(command.item_ids)}"]

    def reset_stale(self, command: QueueResetStaleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        stale_after = (
            timedelta(hours=command.stale_after_hours)
            if command.stale_after_hours is not None
            else None
        )
        with _repository(settings) as repository:
            result = repository.reset_stale_selected(stale_after)
        lines = [f"Stale reservations reset: {result.reset_count}"]
        lines.extend(f"  {item_id}" for item_id in result.item_ids)
        return lines

    def update_scores(self, command: QueueUpdateScoresCommand) -> list[str]:
        scores = ItemScores(
            synthesis=command.synthesis_score,
            relevance=command.relevance_score,
            uniqueness=command.uniqueness_score,
        )
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.update_scores(command.item_id, scores)
        return [f"Scores updated: {command.item_id} total={scores.total:.2f}"]

    def stats(self, command: QueueDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = repository.stats()
        lines = [f"Queue items: {stats.total}"]
        lines.extend(f"  {status.value:<9} {count}" for status, count in stats.counts.items())
        return lines

    def distribution(self, command: QueueDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            entries = repository.source_distribution()
        lines = [f"Sources with selectable items: {len(entries)}"]
        for entry in entries:
            label = entry.source_display_name or "-"
            lines.append(f"  {entry.selectable_count:>4}  {entry.source_identifier}  ({label})")
        return lines

    def inspect(self, command: QueueInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_item_details(command.item_id)
        if details is None:
            return [f"Item not found: {command.item_id}"]

        item = details.item
        lines = [
            f"Item: {item.item_id}",
            f"Title: {item.title}",
            f"Source: {item.source_identifier} ({item.source_display_name or '-'})",
            f"URL: {item.source_url or '-'}",
            f"Status: {item.status.value}",
            f"Scores: synthesis={item.scores.synthesis} relevance={item.scores.relevance} "
            f"uniqueness={item.scores.uniqueness} total={item.total_score}",
            f"Queued: {item.queued_at.isoformat()}",
            f"Expires: {item.expires_at.isoformat()}",
            f"Article: {item.consuming_article_id or '-'}",
            f"Skip reason: {item.skip_reason or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def clear(self, command: QueueDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            cleared = repository.clear_pending()
        return [f"Cleared pending items: {cleared}"]


def _item_from_command(command: QueueAddCommand) -> CandidateItemCreate:
    if not command.title:
        raise QueueValidationError("--title is required unless --from-json is given.")
    return CandidateItemCreate(
        title=command.title,
        source_identifier=normalize_source_identifier(command.source, command.url),
        source_display_name=extract_source_display_name(command.source),
        source_url=command.url,
        content=command.content,
        excerpt=command.excerpt,
        external_ref=command.external_ref,
        scores=ItemScores(
            synthesis=command.synthesis_score,
            relevance=command.relevance_score,
            uniqueness=command.uniqueness_score,
        ),
    )


def _load_batch(path: Path) -> list[CandidateItemCreate]:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise QueueValidationError(f"Cannot read item batch {path}: {error}") from error
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise QueueValidationError(f"Item batch {path} must hold a JSON object or list.")
    return [_item_from_payload(entry) for entry in payload]


def _item_from_payload(entry: Any) -> CandidateItemCreate:
    if not isinstance(entry, dict):
        raise QueueValidationError(f"Item batch entries must be objects, got {entry!r}.")
    source = entry.get("source_email") or entry.get("source")
    url = entry.get("source_url") or entry.get("url")
    metadata = entry.get("metadata")
    return CandidateItemCreate(
        title=str(entry.get("title") or ""),
        source_identifier=entry.get("source_identifier")
        or normalize_source_identifier(source, url),
        source_display_name=entry.get("source_display_name")
        or extract_source_display_name(source),
        source_url=url,
        content=entry.get("content"),
        excerpt=entry.get("excerpt"),
        external_ref=entry.get("external_ref"),
        scores=ItemScores(
            synthesis=float(entry.get("synthesis_score", 0.0)),
            relevance=float(entry.get("relevance_score", 0.0)),
            uniqueness=float(entry.get("uniqueness_score", 0.0)),
        ),
        metadata=metadata if isinstance(metadata, dict) else {},
    )


def _item_line(item: CandidateItemView) -> str:
    return (
        f"  {item.item_id} score={item.total_score:.2f} "
        f"source={item.source_identifier} title={item.title}"
    )


def _parse_status(raw: str) -> QueueItemStatus:
    try:
        return QueueItemStatus(raw.strip().lower())
    except ValueError as error:
        allowed = ", ".join(status.value for status in QueueItemStatus)
        raise QueueValidationError(f"Unknown status {raw!r}; expected one of: {allowed}") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[QueueRepository]:
    settings.validate()
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
