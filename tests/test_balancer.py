from __future__ import annotations

import math
from collections import Counter

import allure
import pytest

from news_synth.queue.balancer import SelectionBalancer, balance_items
from news_synth.queue.repository import QueueRepository

from conftest import FrozenClock, candidate

pytestmark = [
    allure.epic("Candidate Queue"),
    allure.feature("Selection Balancer"),
]


def _seed(repository: QueueRepository, layout: dict[str, list[float]]) -> None:
    repository.enqueue(
        [
            candidate(f"{source}-{index}", source=f"{source}@example.com", score=score)
            for source, scores in layout.items()
            for index, score in enumerate(scores)
        ],
    )


def _sources(picks: list) -> Counter[str]:
    return Counter(pick.item.source_identifier.split("@")[0] for pick in picks)


def test_balanced_selection_spreads_evenly_across_sources(repository: QueueRepository) -> None:
    _seed(
        repository,
        {
            "a": [5.0, 4.9, 4.8, 4.7, 4.6],
            "b": [3.0, 2.9, 2.8, 2.7, 2.6],
            "c": [1.0, 0.9, 0.8, 0.7, 0.6],
        },
    )

    picks = SelectionBalancer(repository).get_balanced_selection(6)

    assert _sources(picks) == {"a": 2, "b": 2, "c": 2}
    assert [pick.rank for pick in picks] == [1, 2, 3, 4, 5, 6]
    assert picks[0].item.title == "a-0"
    assert {pick.item.title for pick in picks} == {"a-0", "a-1", "b-0", "b-1", "c-0", "c-1"}


@pytest.mark.parametrize(("sources", "max_items"), [(4, 10), (3, 7), (5, 5), (2, 9)])
def test_no_source_exceeds_its_share_when_all_have_enough(
    repository: QueueRepository,
    sources: int,
    max_items: int,
) -> None:
    layout = {f"s{index}": [float(sources - index)] * max_items for index in range(sources)}
    _seed(repository, layout)

    picks = SelectionBalancer(repository).get_balanced_selection(max_items)

    assert len(picks) == max_items
    assert max(_sources(picks).values()) <= math.ceil(max_items / sources)


def test_exhausted_source_share_is_redistributed(repository: QueueRepository) -> None:
    _seed(repository, {"big": [1.0] * 10, "small": [9.0]})

    picks = SelectionBalancer(repository).get_balanced_selection(6)

    assert len(picks) == 6
    assert _sources(picks) == {"big": 5, "small": 1}
    assert picks[0].item.title == "small-0"


def test_single_source_returns_top_items_by_score(repository: QueueRepository) -> None:
    _seed(repository, {"only": [1.0, 3.0, 2.0, 0.5]})

    picks = SelectionBalancer(repository).get_balanced_selection(3)

    assert [pick.item.title for pick in picks] == ["only-1", "only-2", "only-0"]


def test_short_queue_returns_everything(repository: QueueRepository) -> None:
    _seed(repository, {"a": [1.0], "b": [2.0]})

    picks = SelectionBalancer(repository).get_balanced_selection(10)

    assert [pick.item.title for pick in picks] == ["b-0", "a-0"]


def test_degenerate_requests_return_empty(repository: QueueRepository) -> None:
    balancer = SelectionBalancer(repository)
    assert balancer.get_balanced_selection(5) == []

    _seed(repository, {"a": [1.0]})
    assert balancer.get_balanced_selection(0) == []
    assert balance_items([], 3) == []


def test_ties_prefer_older_items(repository: QueueRepository, clock: FrozenClock) -> None:
    repository.enqueue([candidate("newer-first-source", source="a@example.com")])
    clock.advance(minutes=-10)
    repository.enqueue([candidate("older", source="b@example.com")])

    picks = SelectionBalancer(repository).get_balanced_selection(1)

    assert [pick.item.title for pick in picks] == ["older"]


def test_excluded_sources_are_left_for_manual_selection(repository: QueueRepository) -> None:
    _seed(repository, {"crawler": [10.0, 9.0], "mail": [1.0, 0.5]})

    balancer = SelectionBalancer(repository, excluded_sources=["Crawler@example.com"])
    picks = balancer.get_balanced_selection(4)

    assert [pick.item.title for pick in picks] == ["mail-0", "mail-1"]
    distribution = balancer.get_source_distribution()
    assert {entry.source_identifier for entry in distribution} == {
        "crawler@example.com",
        "mail@example.com",
    }


def test_expired_and_reserved_items_are_not_candidates(
    repository: QueueRepository,
    clock: FrozenClock,
) -> None:
    old = candidate("old", source="a@example.com", score=9.0)
    [old_id] = repository.enqueue([old]).inserted_ids
    clock.advance(hours=49)
    fresh_ids = repository.enqueue(
        [
            candidate("taken", source="b@example.com", score=8.0),
            candidate("free", source="c@example.com", score=1.0),
        ],
    ).inserted_ids
    repository.select([fresh_ids[0]])

    picks = SelectionBalancer(repository).get_balanced_selection(5)

    assert [pick.item.title for pick in picks] == ["free"]
    assert old_id not in {pick.item.item_id for pick in picks}
