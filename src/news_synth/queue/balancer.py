"""Diversity-constrained top-k selection over selectable queue items."""

from __future__ import annotations

import logging
import math
from collections import Counter, deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from news_synth.queue.models import CandidateItemView, SourceDistributionEntry
from news_synth.queue.repository import QueueRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BalancedPick:
    """One chosen item and its 1-based position in selection order."""

    item: CandidateItemView
    rank: int


class SelectionBalancer:
    """Pick high-scoring items without letting one source dominate."""

    def __init__(
        self,
        repository: QueueRepository,
        *,
        excluded_sources: Iterable[str] = (),
    ) -> None:
        self._repository = repository
        self._excluded = frozenset(source.strip().lower() for source in excluded_sources)

    def get_source_distribution(self) -> list[SourceDistributionEntry]:
        return self._repository.source_distribution()

    def get_balanced_selection(self, max_items: int) -> list[BalancedPick]:
        """Choose up to ``max_items`` selectable items, balanced across sources.

        The result is in selection order; narrative order is decided later.
        """

        if max_items <= 0:
            return []
        candidates = [
            item
            for item in self._repository.list_selectable()
            if item.source_identifier not in self._excluded
        ]
        picks = balance_items(candidates, max_items)
        if picks:
            sources = Counter(pick.item.source_identifier for pick in picks)
            logger.info(
                "Balanced selection: %d items from %d sources %s",
                len(picks),
                len(sources),
                dict(sources),
            )
        return picks


def balance_items(items: Sequence[CandidateItemView], max_items: int) -> list[BalancedPick]:
    """Round-robin the per-source best items under a soft, redistributed quota.

    Each source gets ``max(1, ceil(max_items / sources))`` slots. The next pick
    comes from the source that has used the smallest fraction of its quota;
    ties go to the higher score, then the older item. When a source runs dry
    its unused share is spread over the remaining sources, so the target count
    is still reached when few sources are available.
    """

    if max_items <= 0 or not items:
        return []

    groups: dict[str, deque[CandidateItemView]] = {}
    for item in sorted(items, key=_item_sort_key):
        groups.setdefault(item.source_identifier, deque()).append(item)

    quota = max(1, math.ceil(max_items / len(groups)))
    taken: Counter[str] = Counter()
    picks: list[BalancedPick] = []

    while len(picks) < max_items:
        active = [source for source, queue in groups.items() if queue]
        if not active:
            break
        exhausted_taken = sum(taken[source] for source in groups if not groups[source])
        effective_quota = max(
            quota,
            math.ceil((max_items - exhausted_taken) / len(active)),
        )
        source = min(
            active,
            key=lambda name: (
                taken[name] / effective_quota,
                *_item_sort_key(groups[name][0]),
            ),
        )
        item = groups[source].popleft()
        taken[source] += 1
        picks.append(BalancedPick(item=item, rank=len(picks) + 1))

    return picks


def _item_sort_key(item: CandidateItemView) -> tuple[float, float]:
    return (-item.total_score, item.queued_at.timestamp())
