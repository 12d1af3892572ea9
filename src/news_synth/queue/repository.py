"""Persistent candidate queue repository with compare-and-set transitions."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, or_, select

from news_synth.errors import (
    ItemNotFoundError,
    NotSelectableError,
    PersistenceFailure,
    QueueValidationError,
)
from news_synth.queue.models import (
    CandidateItemCreate,
    CandidateItemView,
    EnqueueResult,
    ItemScores,
    MarkUsedResult,
    QueueItemDetails,
    QueueItemEventView,
    QueueItemStatus,
    QueueStats,
    ResetResult,
    SelectResult,
    SourceDistributionEntry,
)
from news_synth.storage.alembic_runner import upgrade_head
from news_synth.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from news_synth.storage.sqlmodel_models import QueueItem, QueueItemEvent

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=48)
DEFAULT_STALE_AFTER = timedelta(hours=2)


class QueueRepository:
    """Candidate queue persistence facade backed by SQLModel + SQLite.

    Every status transition is a conditional ``UPDATE ... WHERE status = ?``
    whose row count decides the outcome, so concurrent callers sharing one
    database file can never both win the same item.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        ttl: timedelta = DEFAULT_TTL,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if ttl <= timedelta(0):
            raise QueueValidationError("Queue item TTL must be positive.")
        if stale_after <= timedelta(0):
            raise QueueValidationError("Stale selection threshold must be positive.")
        self.db_path = db_path
        self.ttl = ttl
        self.stale_after = stale_after
        self._clock = clock or utc_now
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def enqueue(self, items: Sequence[CandidateItemCreate]) -> EnqueueResult:
        """Insert new items as pending, skipping duplicates.

        Duplicates are detected by ``(source_identifier, title)`` or by an
        explicit ``external_ref``, both against stored rows and within the batch.
        """

        prepared = [_prepare_create(item) for item in items]
        result = EnqueueResult(inserted_count=0, duplicate_count=0)
        seen_keys: set[tuple[str, str]] = set()
        seen_refs: set[str] = set()

        for item in prepared:
            key = (item.source_identifier, item.title)
            if key in seen_keys or (item.external_ref and item.external_ref in seen_refs):
                result.duplicate_count += 1
                continue
            seen_keys.add(key)
            if item.external_ref:
                seen_refs.add(item.external_ref)

            item_id = self._insert_if_absent(item)
            if item_id is None:
                result.duplicate_count += 1
                continue
            result.inserted_count += 1
            result.inserted_ids.append(item_id)

        logger.info(
            "Enqueued %d items (%d duplicates skipped)",
            result.inserted_count,
            result.duplicate_count,
        )
        return result

    def _insert_if_absent(self, item: CandidateItemCreate) -> str | None:
        now = self._now()
        with self._session() as session:
            conditions = [
                (col(QueueItem.source_identifier) == item.source_identifier)
                & (col(QueueItem.title) == item.title),
            ]
            if item.external_ref:
                conditions.append(col(QueueItem.external_ref) == item.external_ref)
            existing = session.exec(
                select(QueueItem.item_id).where(or_(*conditions)).limit(1),
            ).first()
            if existing is not None:
                return None

            item_id = str(uuid4())
            session.add(
                QueueItem(
                    item_id=item_id,
                    external_ref=item.external_ref,
                    title=item.title,
                    excerpt=item.excerpt,
                    content=item.content,
                    source_identifier=item.source_identifier,
                    source_display_name=item.source_display_name,
                    source_url=item.source_url,
                    synthesis_score=item.scores.synthesis,
                    relevance_score=item.scores.relevance,
                    uniqueness_score=item.scores.uniqueness,
                    total_score=item.scores.total,
                    status=QueueItemStatus.PENDING.value,
                    queued_at=to_db_datetime(now),
                    expires_at=to_db_datetime(now + self.ttl),
                    metadata_json=(
                        json.dumps(item.metadata, ensure_ascii=False, sort_keys=True)
                        if item.metadata
                        else None
                    ),
                    updated_at=to_db_datetime(now),
                ),
            )
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="enqueued",
                status_from=None,
                status_to=QueueItemStatus.PENDING,
                details={"source_identifier": item.source_identifier},
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            return item_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_selectable(self, *, limit: int | None = None) -> list[CandidateItemView]:
        """Return pending items whose expiry is still in the future.

        The expiry filter is applied at read time, independent of whether
        ``expire_old_items`` has swept the rows yet.
        """

        now = to_db_datetime(self._now())
        with self._session() as session:
            statement = (
                select(QueueItem)
                .where(
                    QueueItem.status == QueueItemStatus.PENDING.value,
                    col(QueueItem.expires_at) > now,
                )
                .order_by(col(QueueItem.total_score).desc(), col(QueueItem.queued_at).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_item_view(row) for row in rows]

    def list_pending_by_source(self, source_identifier: str) -> list[CandidateItemView]:
        """Selectable items of one source, best first."""

        now = to_db_datetime(self._now())
        with self._session() as session:
            rows = session.exec(
                select(QueueItem)
                .where(
                    QueueItem.source_identifier == source_identifier.strip().lower(),
                    QueueItem.status == QueueItemStatus.PENDING.value,
                    col(QueueItem.expires_at) > now,
                )
                .order_by(col(QueueItem.total_score).desc(), col(QueueItem.queued_at).asc()),
            ).all()
        return [_to_item_view(row) for row in rows]

    def list_items(
        self,
        *,
        status: QueueItemStatus = QueueItemStatus.PENDING,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CandidateItemView]:
        """Page through items of one status, highest score first."""

        with self._session() as session:
            rows = session.exec(
                select(QueueItem)
                .where(QueueItem.status == status.value)
                .order_by(col(QueueItem.total_score).desc(), col(QueueItem.queued_at).asc())
                .offset(offset)
                .limit(limit),
            ).all()
        return [_to_item_view(row) for row in rows]

    def get_item(self, item_id: str) -> CandidateItemView | None:
        with self._session() as session:
            row = session.get(QueueItem, item_id)
            return _to_item_view(row) if row is not None else None

    def get_items(self, item_ids: Iterable[str]) -> list[CandidateItemView]:
        """Fetch items preserving the order of ``item_ids``; unknown ids are dropped."""

        ids = list(item_ids)
        if not ids:
            return []
        with self._session() as session:
            rows = session.exec(select(QueueItem).where(col(QueueItem.item_id).in_(ids))).all()
        by_id = {row.item_id: row for row in rows}
        return [_to_item_view(by_id[item_id]) for item_id in ids if item_id in by_id]

    def get_item_details(self, item_id: str) -> QueueItemDetails | None:
        """Return item details with its audit events."""

        with self._session() as session:
            row = session.get(QueueItem, item_id)
            if row is None:
                return None
            item = _to_item_view(row)
            event_rows = session.exec(
                select(QueueItemEvent)
                .where(QueueItemEvent.item_id == item_id)
                .order_by(col(QueueItemEvent.id).asc()),
            ).all()

        events: list[QueueItemEventView] = []
        for event_row in event_rows:
            details: dict[str, Any] = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                QueueItemEventView(
                    event_id=event_row.id or 0,
                    item_id=event_row.item_id,
                    event_type=event_row.event_type,
                    status_from=(
                        QueueItemStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        QueueItemStatus(event_row.status_to)
                        if event_row.status_to is not None
                        else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return QueueItemDetails(item=item, events=events)

    def stats(self) -> QueueStats:
        """Count items by status; every status is present in the result."""

        with self._session() as session:
            rows = session.exec(
                select(QueueItem.status, func.count()).group_by(QueueItem.status),
            ).all()
        counts = dict.fromkeys(QueueItemStatus, 0)
        for status, count in rows:
            counts[QueueItemStatus(status)] = int(count)
        return QueueStats(counts=counts)

    def source_distribution(self) -> list[SourceDistributionEntry]:
        """Count currently selectable items grouped by source."""

        now = to_db_datetime(self._now())
        with self._session() as session:
            rows = session.exec(
                select(
                    QueueItem.source_identifier,
                    func.max(QueueItem.source_display_name),
                    func.count(),
                )
                .where(
                    QueueItem.status == QueueItemStatus.PENDING.value,
                    col(QueueItem.expires_at) > now,
                )
                .group_by(QueueItem.source_identifier)
                .order_by(func.count().desc(), col(QueueItem.source_identifier).asc()),
            ).all()
        return [
            SourceDistributionEntry(
                source_identifier=source,
                source_display_name=display_name,
                selectable_count=int(count),
            )
            for source, display_name, count in rows
        ]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def select(self, item_ids: Sequence[str]) -> SelectResult:
        """Atomically reserve items: ``pending -> selected``.

        Each id is an independent compare-and-set. Ids that were not
        pending/unexpired are reported in ``failed_ids`` with one
        ``NotSelectableError`` each; successful ids are kept.
        """

        ids = _validate_ids(item_ids)
        now = to_db_datetime(self._now())
        selected: list[str] = []
        failed: list[str] = []

        with self._session() as session:
            for item_id in ids:
                result = session.exec(
                    sa_update(QueueItem)
                    .where(
                        col(QueueItem.item_id) == item_id,
                        col(QueueItem.status) == QueueItemStatus.PENDING.value,
                        col(QueueItem.expires_at) > now,
                    )
                    .values(
                        status=QueueItemStatus.SELECTED.value,
                        selected_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    failed.append(item_id)
                    continue
                selected.append(item_id)
                self._add_event(
                    session=session,
                    item_id=item_id,
                    event_type="selected",
                    status_from=QueueItemStatus.PENDING,
                    status_to=QueueItemStatus.SELECTED,
                    details={},
                )
            session.commit()

            rows = session.exec(
                select(QueueItem).where(col(QueueItem.item_id).in_(selected + failed)),
            ).all()

        by_id = {row.item_id: row for row in rows}
        errors = [
            NotSelectableError(item_id, _not_selectable_reason(by_id.get(item_id), now))
            for item_id in failed
        ]
        if failed:
            logger.warning(
                "Selected %d/%d items; not selectable: %s",
                len(selected),
                len(ids),
                ", ".join(failed[:5]) + (" ..." if len(failed) > 5 else ""),
            )
        return SelectResult(
            items=[_to_item_view(by_id[item_id]) for item_id in selected],
            failed_ids=failed,
            errors=errors,
        )

    def mark_used(self, item_ids: Sequence[str], article_id: str) -> MarkUsedResult:
        """Consume reserved items: ``selected -> used``.

        Re-marking items already used by the same article is a no-op reported in
        ``unchanged_ids``; ids in any other state are reported in ``failed_ids``.
        """

        ids = _validate_ids(item_ids)
        article_id = article_id.strip() if article_id else ""
        if not article_id:
            raise QueueValidationError("article_id is required to mark items as used.")
        now = to_db_datetime(self._now())
        result = MarkUsedResult(updated_count=0)

        with self._session() as session:
            for item_id in ids:
                updated = session.exec(
                    sa_update(QueueItem)
                    .where(
                        col(QueueItem.item_id) == item_id,
                        col(QueueItem.status) == QueueItemStatus.SELECTED.value,
                    )
                    .values(
                        status=QueueItemStatus.USED.value,
                        used_at=now,
                        consuming_article_id=article_id,
                        updated_at=now,
                    ),
                )
                if updated.rowcount == 1:
                    result.updated_count += 1
                    self._add_event(
                        session=session,
                        item_id=item_id,
                        event_type="used",
                        status_from=QueueItemStatus.SELECTED,
                        status_to=QueueItemStatus.USED,
                        details={"article_id": article_id},
                    )
                    continue

                row = session.get(QueueItem, item_id)
                if (
                    row is not None
                    and row.status == QueueItemStatus.USED.value
                    and row.consuming_article_id == article_id
                ):
                    result.unchanged_ids.append(item_id)
                else:
                    result.failed_ids.append(item_id)
            session.commit()

        if result.failed_ids:
            logger.warning(
                "Marked %d/%d items as used for article %s; %d were not selected",
                result.updated_count,
                len(ids),
                article_id,
                len(result.failed_ids),
            )
        return result

    def reset_to_pending(self, item_ids: Sequence[str]) -> ResetResult:
        """Release reservations: ``selected -> pending``."""

        ids = _validate_ids(item_ids)
        return self._reset_selected(ids, cutoff=None, event_type="reset")

    def reset_stale_selected(self, stale_after: timedelta | None = None) -> ResetResult:
        """Release every reservation older than the stale threshold."""

        threshold = self.stale_after if stale_after is None else stale_after
        if threshold <= timedelta(0):
            raise QueueValidationError("Stale selection threshold must be positive.")
        cutoff = to_db_datetime(self._now() - threshold)
        with self._session() as session:
            candidates = session.exec(
                select(QueueItem.item_id).where(
                    QueueItem.status == QueueItemStatus.SELECTED.value,
                    col(QueueItem.selected_at) < cutoff,
                ),
            ).all()
        result = self._reset_selected(list(candidates), cutoff=cutoff, event_type="stale_reset")
        if result.reset_count:
            logger.info(
                "Reset %d stale selected items (older than %s) to pending",
                result.reset_count,
                threshold,
            )
        return result

    def _reset_selected(
        self,
        ids: list[str],
        *,
        cutoff: datetime | None,
        event_type: str,
    ) -> ResetResult:
        now = to_db_datetime(self._now())
        result = ResetResult(reset_count=0)
        if not ids:
            return result
        with self._session() as session:
            for item_id in ids:
                statement = sa_update(QueueItem).where(
                    col(QueueItem.item_id) == item_id,
                    col(QueueItem.status) == QueueItemStatus.SELECTED.value,
                )
                if cutoff is not None:
                    statement = statement.where(col(QueueItem.selected_at) < cutoff)
                updated = session.exec(
                    statement.values(
                        status=QueueItemStatus.PENDING.value,
                        selected_at=None,
                        updated_at=now,
                    ),
                )
                if updated.rowcount != 1:
                    continue
                result.reset_count += 1
                result.item_ids.append(item_id)
                self._add_event(
                    session=session,
                    item_id=item_id,
                    event_type=event_type,
                    status_from=QueueItemStatus.SELECTED,
                    status_to=QueueItemStatus.PENDING,
                    details={},
                )
            session.commit()
        return result

    def skip(self, item_ids: Sequence[str], reason: str) -> int:
        """Drop pending items for good: ``pending -> skipped``."""

        ids = _validate_ids(item_ids)
        reason = reason.strip() if reason else ""
        if not reason:
            raise QueueValidationError("A skip reason is required.")
        now = to_db_datetime(self._now())
        skipped = 0
        with self._session() as session:
            for item_id in ids:
                updated = session.exec(
                    sa_update(QueueItem)
                    .where(
                        col(QueueItem.item_id) == item_id,
                        col(QueueItem.status) == QueueItemStatus.PENDING.value,
                    )
                    .values(
                        status=QueueItemStatus.SKIPPED.value,
                        skip_reason=reason,
                        updated_at=now,
                    ),
                )
                if updated.rowcount != 1:
                    continue
                skipped += 1
                self._add_event(
                    session=session,
                    item_id=item_id,
                    event_type="skipped",
                    status_from=QueueItemStatus.PENDING,
                    status_to=QueueItemStatus.SKIPPED,
                    details={"reason": reason},
                )
            session.commit()
        return skipped

    def expire_old_items(self) -> int:
        """Sweep pending items past their expiry: ``pending -> expired``."""

        now = to_db_datetime(self._now())
        with self._session() as session:
            candidates = session.exec(
                select(QueueItem.item_id).where(
                    QueueItem.status == QueueItemStatus.PENDING.value,
                    col(QueueItem.expires_at) <= now,
                ),
            ).all()
        if not candidates:
            return 0

        expired = 0
        with self._session() as session:
            for item_id in candidates:
                updated = session.exec(
                    sa_update(QueueItem)
                    .where(
                        col(QueueItem.item_id) == item_id,
                        col(QueueItem.status) == QueueItemStatus.PENDING.value,
                        col(QueueItem.expires_at) <= now,
                    )
                    .values(
                        status=QueueItemStatus.EXPIRED.value,
                        skip_reason="Auto-expired after TTL",
                        updated_at=now,
                    ),
                )
                if updated.rowcount != 1:
                    continue
                expired += 1
                self._add_event(
                    session=session,
                    item_id=item_id,
                    event_type="expired",
                    status_from=QueueItemStatus.PENDING,
                    status_to=QueueItemStatus.EXPIRED,
                    details={},
                )
            session.commit()
        logger.info("Expired %d pending items", expired)
        return expired

    def update_scores(self, item_id: str, scores: ItemScores) -> None:
        """Overwrite the item's scores and recompute its total."""

        _validate_scores(scores)
        now = to_db_datetime(self._now())
        with self._session() as session:
            updated = session.exec(
                sa_update(QueueItem)
                .where(col(QueueItem.item_id) == item_id)
                .values(
                    synthesis_score=scores.synthesis,
                    relevance_score=scores.relevance,
                    uniqueness_score=scores.uniqueness,
                    total_score=scores.total,
                    updated_at=now,
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                raise ItemNotFoundError(item_id)
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="scores_updated",
                status_from=None,
                status_to=None,
                details={
                    "synthesis": scores.synthesis,
                    "relevance": scores.relevance,
                    "uniqueness": scores.uniqueness,
                },
            )
            session.commit()

    def clear_pending(self) -> int:
        """Delete every pending item; returns how many were removed."""

        with self._session() as session:
            result = session.exec(
                sa_delete(QueueItem).where(
                    col(QueueItem.status) == QueueItemStatus.PENDING.value,
                ),
            )
            session.commit()
            cleared = result.rowcount or 0
        logger.info("Cleared %d pending items", cleared)
        return cleared

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return to_utc_aware_datetime(self._clock())

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise PersistenceFailure(f"Queue storage error: {error}") from error

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        item_id: str,
        event_type: str,
        status_from: QueueItemStatus | None,
        status_to: QueueItemStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QueueItemEvent(
                item_id=item_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self._now()),
            ),
        )


def _validate_ids(item_ids: Sequence[str]) -> list[str]:
    if isinstance(item_ids, str):
        raise QueueValidationError("Expected a list of item ids, got a single string.")
    ids: list[str] = []
    seen: set[str] = set()
    for raw in item_ids:
        item_id = raw.strip() if isinstance(raw, str) else ""
        if not item_id:
            raise QueueValidationError("Item ids must be non-empty strings.")
        if item_id in seen:
            continue
        seen.add(item_id)
        ids.append(item_id)
    if not ids:
        raise QueueValidationError("At least one item id is required.")
    return ids


def _validate_scores(scores: ItemScores) -> None:
    for name in ("synthesis", "relevance", "uniqueness"):
        value = getattr(scores, name)
        if not isinstance(value, int | float) or not math.isfinite(value) or value < 0:
            raise QueueValidationError(f"Score {name!r} must be a finite number >= 0: {value!r}")


def _prepare_create(item: CandidateItemCreate) -> CandidateItemCreate:
    title = item.title.strip() if item.title else ""
    if not title:
        raise QueueValidationError("Queue items require a non-empty title.")
    source_identifier = (item.source_identifier or "").strip().lower()
    if not source_identifier:
        raise QueueValidationError(f"Queue item {title!r} has no source identifier.")
    _validate_scores(item.scores)
    external_ref = item.external_ref.strip() if item.external_ref else None
    return CandidateItemCreate(
        title=title,
        source_identifier=source_identifier,
        content=item.content or None,
        excerpt=item.excerpt or None,
        source_display_name=item.source_display_name or None,
        source_url=item.source_url or None,
        external_ref=external_ref or None,
        scores=item.scores,
        metadata=dict(item.metadata),
    )


def _not_selectable_reason(row: QueueItem | None, now: datetime) -> str:
    if row is None:
        return "missing"
    if row.status == QueueItemStatus.PENDING.value and row.expires_at <= now:
        return "expired"
    return f"status={row.status}"


def _to_item_view(row: QueueItem) -> CandidateItemView:
    metadata: dict[str, Any] = {}
    if row.metadata_json:
        parsed = json.loads(row.metadata_json)
        if isinstance(parsed, dict):
            metadata = parsed
    return CandidateItemView(
        item_id=row.item_id,
        title=row.title,
        content=row.content,
        excerpt=row.excerpt,
        source_identifier=row.source_identifier,
        source_display_name=row.source_display_name,
        source_url=row.source_url,
        external_ref=row.external_ref,
        scores=ItemScores(
            synthesis=row.synthesis_score,
            relevance=row.relevance_score,
            uniqueness=row.uniqueness_score,
        ),
        total_score=row.total_score,
        status=QueueItemStatus(row.status),
        skip_reason=row.skip_reason,
        queued_at=to_utc_aware_datetime(row.queued_at),
        selected_at=(
            to_utc_aware_datetime(row.selected_at) if row.selected_at is not None else None
        ),
        used_at=to_utc_aware_datetime(row.used_at) if row.used_at is not None else None,
        expires_at=to_utc_aware_datetime(row.expires_at),
        consuming_article_id=row.consuming_article_id,
        metadata=metadata,
    )
