from __future__ import annotations

import math
from collections.abc import Callable
from datetime import timedelta

import allure
import pytest
from sqlmodel import Session, select

from news_synth.errors import ItemNotFoundError, QueueValidationError
from news_synth.queue.models import CandidateItemCreate, ItemScores, QueueItemStatus
from news_synth.queue.repository import QueueRepository
from news_synth.storage.sqlmodel_models import QueueItemEvent

from conftest import FrozenClock, candidate

pytestmark = [
    allure.epic("Candidate Queue"),
    allure.feature("Lifecycle Transitions"),
]


def _enqueue(repository: QueueRepository, *items: CandidateItemCreate) -> list[str]:
    return repository.enqueue(list(items)).inserted_ids


def test_enqueue_skips_duplicates_by_source_title_and_external_ref(
    repository: QueueRepository,
) -> None:
    first = repository.enqueue(
        [
            candidate("Alpha", external_ref="msg-1"),
            candidate("Alpha"),
            candidate("Alpha", source="other@example.com"),
            candidate("Beta", external_ref="msg-1"),
        ],
    )
    assert first.inserted_count == 2
    assert first.duplicate_count == 2

    second = repository.enqueue(
        [candidate("  Alpha  "), candidate("Gamma", source="x@y.z", external_ref="msg-1")],
    )
    assert second.inserted_count == 0
    assert second.duplicate_count == 2
    assert repository.stats().counts[QueueItemStatus.PENDING] == 2


def test_enqueue_sets_pending_status_expiry_and_total_score(
    repository: QueueRepository,
    clock: FrozenClock,
) -> None:
    [item_id] = _enqueue(
        repository,
        CandidateItemCreate(
            title="Alpha",
            source_identifier="News@Example.com",
            scores=ItemScores(synthesis=0.5, relevance=0.25, uniqueness=1.0),
            metadata={"lang": "en"},
        ),
    )
    item = repository.get_item(item_id)
    assert item is not None
    assert item.status == QueueItemStatus.PENDING
    assert item.source_identifier == "news@example.com"
    assert item.total_score == pytest.approx(1.75)
    assert item.queued_at == clock.now
    assert item.expires_at == clock.now + timedelta(hours=48)
    assert item.queued_at.tzinfo is not None
    assert item.metadata == {"lang": "en"}


@pytest.mark.parametrize(
    "item",
    [
        candidate("   "),
        candidate("Alpha", source=" "),
        CandidateItemCreate(
            title="Alpha",
            source_identifier="a@b.c",
            scores=ItemScores(relevance=-1),
        ),
        CandidateItemCreate(
            title="Alpha",
            source_identifier="a@b.c",
            scores=ItemScores(uniqueness=math.nan),
        ),
    ],
)
def test_enqueue_rejects_invalid_items(
    repository: QueueRepository,
    item: CandidateItemCreate,
) -> None:
    with pytest.raises(QueueValidationError):
        repository.enqueue([item])
    assert repository.stats().total == 0


def test_list_selectable_orders_by_score_then_age(
    repository: QueueRepository,
    clock: FrozenClock,
) -> None:
    _enqueue(repository, candidate("Old", score=1.0))
    clock.advance(minutes=5)
    _enqueue(repository, candidate("Best", score=3.0), candidate("Newer", score=1.0))

    titles = [item.title for item in repository.list_selectable()]
    assert titles == ["Best", "Old", "Newer"]
    assert [item.title for item in repository.list_selectable(limit=1)] == ["Best"]


def test_expired_items_are_filtered_before_sweep(
    repository: QueueRepository,
    clock: FrozenClock,
) -> None:
    [old_id] = _enqueue(repository, candidate("Old"))
    clock.advance(hours=47)
    _enqueue(repository, candidate("Fresh"))
    clock.advance(hours=1, seconds=1)

    assert [item.title for item in repository.list_selectable()] == ["Fresh"]
    assert [entry.selectable_count for entry in repository.source_distribution()] == [1]

    result = repository.select([old_id])
    assert result.items == []
    assert result.errors[0].reason == "expired"

    assert repository.expire_old_items() == 1
    assert repository.expire_old_items() == 0
    expired = repository.get_item(old_id)
    assert expired is not None
    assert expired.status == QueueItemStatus.EXPIRED
    assert expired.skip_reason


def test_select_partitions_selectable_and_failed_ids(repository: QueueRepository) -> None:
    pending_id, skipped_id, taken_id = _enqueue(
        repository,
        candidate("Alpha"),
        candidate("Beta"),
        candidate("Gamma"),
    )
    repository.skip([skipped_id], "off-topic")
    repository.select([taken_id])

    result = repository.select([pending_id, skipped_id, taken_id, "missing-id", pending_id])

    assert result.selected_ids == [pending_id]
    assert result.failed_ids == [skipped_id, taken_id, "missing-id"]
    assert {error.item_id: error.reason for error in result.errors} == {
        skipped_id: "status=skipped",
        taken_id: "status=selected",
        "missing-id": "missing",
    }
    selected = repository.get_item(pending_id)
    assert selected is not None
    assert selected.status == QueueItemStatus.SELECTED
    assert selected.selected_at is not None


@pytest.mark.parametrize("item_ids", [[], [" "], "abc"])
def test_select_rejects_invalid_id_lists(repository: QueueRepository, item_ids: object) -> None:
    with pytest.raises(QueueValidationError):
        repository.select(item_ids)  # type: ignore[arg-type]


def test_mark_used_is_idempotent_per_article(repository: QueueRepository) -> None:
    selected_id, pending_id = _enqueue(repository, candidate("Alpha"), candidate("Beta"))
    repository.select([selected_id])

    first = repository.mark_used([selected_id, pending_id], "article-1")
    assert first.updated_count == 1
    assert first.unchanged_ids == []
    assert first.failed_ids == [pending_id]

    again = repository.mark_used([selected_id], "article-1")
    assert again.updated_count == 0
    assert again.unchanged_ids == [selected_id]

    other_article = repository.mark_used([selected_id], "article-2")
    assert other_article.failed_ids == [selected_id]

    used = repository.get_item(selected_id)
    assert used is not None
    assert used.status == QueueItemStatus.USED
    assert used.consuming_article_id == "article-1"
    assert used.used_at is not None

    with pytest.raises(QueueValidationError):
        repository.mark_used([selected_id], "  ")


def test_used_items_never_return_to_pending(repository: QueueRepository) -> None:
    [item_id] = _enqueue(repository, candidate("Alpha"))
    repository.select([item_id])
    repository.mark_used([item_id], "article-1")

    assert repository.reset_to_pending([item_id]).reset_count == 0
    assert repository.skip([item_id], "late") == 0
    assert repository.select([item_id]).failed_ids == [item_id]
    item = repository.get_item(item_id)
    assert item is not None
    assert item.status == QueueItemStatus.USED


def test_reset_to_pending_only_touches_selected_items(repository: QueueRepository) -> None:
    selected_id, pending_id = _enqueue(repository, candidate("Alpha"), candidate("Beta"))
    repository.select([selected_id])

    result = repository.reset_to_pending([selected_id, pending_id])

    assert result.reset_count == 1
    assert result.item_ids == [selected_id]
    item = repository.get_item(selected_id)
    assert item is not None
    assert item.status == QueueItemStatus.PENDING
    assert item.selected_at is None
    assert repository.select([selected_id]).selected_ids == [selected_id]


def test_reset_stale_selected_uses_threshold(
    repository: QueueRepository,
    clock: FrozenClock,
) -> None:
    stale_id, fresh_id = _enqueue(repository, candidate("Alpha"), candidate("Beta"))
    repository.select([stale_id])
    clock.advance(hours=1, minutes=30)
    repository.select([fresh_id])
    clock.advance(minutes=31)

    result = repository.reset_stale_selected()
    assert result.item_ids == [stale_id]

    explicit = repository.reset_stale_selected(timedelta(minutes=30))
    assert explicit.item_ids == [fresh_id]

    with pytest.raises(QueueValidationError):
        repository.reset_stale_selected(timedelta(0))


def test_skip_requires_reason_and_pending_status(repository: QueueRepository) -> None:
    pending_id, selected_id = _enqueue(repository, candidate("Alpha"), candidate("Beta"))
    repository.select([selected_id])

    with pytest.raises(QueueValidationError):
        repository.skip([pending_id], " ")
    assert repository.skip([pending_id, selected_id], "duplicate story") == 1

    item = repository.get_item(pending_id)
    assert item is not None
    assert item.status == QueueItemStatus.SKIPPED
    assert item.skip_reason == "duplicate story"


def test_update_scores_recomputes_total(repository: QueueRepository) -> None:
    low_id, high_id = _enqueue(
        repository,
        candidate("Alpha", score=0.1),
        candidate("Beta", score=0.5),
    )

    repository.update_scores(low_id, ItemScores(synthesis=1.0, relevance=1.0, uniqueness=0.5))

    item = repository.get_item(low_id)
    assert item is not None
    assert item.total_score == pytest.approx(2.5)
    assert [entry.item_id for entry in repository.list_selectable()] == [low_id, high_id]

    with pytest.raises(ItemNotFoundError):
        repository.update_scores("missing-id", ItemScores())
    with pytest.raises(QueueValidationError):
        repository.update_scores(low_id, ItemScores(synthesis=math.inf))


def test_list_items_and_pending_by_source(repository: QueueRepository) -> None:
    a1, _a2, b1 = _enqueue(
        repository,
        candidate("A1", source="a@example.com", score=2.0),
        candidate("A2", source="a@example.com", score=1.0),
        candidate("B1", source="b@example.com"),
    )
    repository.select([b1])

    assert [item.title for item in repository.list_pending_by_source("A@example.com")] == [
        "A1",
        "A2",
    ]
    assert [item.item_id for item in repository.list_items(status=QueueItemStatus.SELECTED)] == [
        b1,
    ]
    page = repository.list_items(status=QueueItemStatus.PENDING, limit=1, offset=0)
    assert [item.item_id for item in page] == [a1]
    second_page = repository.list_items(status=QueueItemStatus.PENDING, limit=1, offset=1)
    assert [item.title for item in second_page] == ["A2"]


def test_stats_and_source_distribution(repository: QueueRepository) -> None:
    ids = _enqueue(
        repository,
        candidate("A1", source="a@example.com", source_display_name="Alpha Weekly"),
        candidate("A2", source="a@example.com"),
        candidate("B1", source="b@example.com"),
        candidate("B2", source="b@example.com"),
        candidate("C1", source="c@example.com"),
    )
    repository.select([ids[2]])
    repository.skip([ids[4]], "noise")

    stats = repository.stats()
    assert stats.total == 5
    assert stats.counts == {
        QueueItemStatus.PENDING: 3,
        QueueItemStatus.SELECTED: 1,
        QueueItemStatus.USED: 0,
        QueueItemStatus.SKIPPED: 1,
        QueueItemStatus.EXPIRED: 0,
    }

    distribution = repository.source_distribution()
    assert [(entry.source_identifier, entry.selectable_count) for entry in distribution] == [
        ("a@example.com", 2),
        ("b@example.com", 1),
    ]
    assert distribution[0].source_display_name == "Alpha Weekly"


def test_clear_pending_keeps_other_statuses(repository: QueueRepository) -> None:
    pending_id, selected_id = _enqueue(repository, candidate("Alpha"), candidate("Beta"))
    repository.select([selected_id])

    assert repository.clear_pending() == 1
    assert repository.get_item(pending_id) is None
    assert repository.get_item(selected_id) is not None


def test_item_details_record_every_transition(repository: QueueRepository) -> None:
    [item_id] = _enqueue(repository, candidate("Alpha"))
    repository.select([item_id])
    repository.reset_to_pending([item_id])
    repository.select([item_id])
    repository.mark_used([item_id], "article-7")

    details = repository.get_item_details(item_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "selected",
        "reset",
        "selected",
        "used",
    ]
    assert details.events[-1].status_from == QueueItemStatus.SELECTED
    assert details.events[-1].status_to == QueueItemStatus.USED
    assert details.events[-1].details == {"article_id": "article-7"}
    assert repository.get_item_details("missing-id") is None


def test_failed_transitions_write_no_events(repository: QueueRepository) -> None:
    [item_id] = _enqueue(repository, candidate("Alpha"))
    repository.mark_used([item_id], "article-1")
    repository.reset_to_pending([item_id])

    with Session(repository.engine) as session:
        events = session.exec(select(QueueItemEvent).where(QueueItemEvent.item_id == item_id)).all()
    assert [event.event_type for event in events] == ["enqueued"]


def test_repository_rejects_non_positive_ttl(
    make_repository: Callable[..., QueueRepository],
) -> None:
    with pytest.raises(QueueValidationError):
        make_repository(ttl=timedelta(0))
