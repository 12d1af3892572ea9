"""Domain models for the candidate queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from news_synth.errors import NotSelectableError


class QueueItemStatus(str, Enum):
    """Candidate item lifecycle states."""

    PENDING = "pending"
    SELECTED = "selected"
    USED = "used"
    SKIPPED = "skipped"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset(
    {QueueItemStatus.USED, QueueItemStatus.SKIPPED, QueueItemStatus.EXPIRED},
)


@dataclass(slots=True, frozen=True)
class ItemScores:
    """Per-dimension scores; the total is their plain sum."""

    synthesis: float = 0.0
    relevance: float = 0.0
    uniqueness: float = 0.0

    @property
    def total(self) -> float:
        return self.synthesis + self.relevance + self.uniqueness


@dataclass(slots=True)
class CandidateItemCreate:
    """Input payload for enqueuing one candidate item."""

    title: str
    source_identifier: str
    content: str | None = None
    excerpt: str | None = None
    source_display_name: str | None = None
    source_url: str | None = None
    external_ref: str | None = None
    scores: ItemScores = field(default_factory=ItemScores)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CandidateItemView:
    """Readable queue item view for CLI, balancer and pipeline."""

    item_id: str
    title: str
    content: str | None
    excerpt: str | None
    source_identifier: str
    source_display_name: str | None
    source_url: str | None
    external_ref: str | None
    scores: ItemScores
    total_score: float
    status: QueueItemStatus
    skip_reason: str | None
    queued_at: datetime
    selected_at: datetime | None
    used_at: datetime | None
    expires_at: datetime
    consuming_article_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def source_label(self) -> str:
        return self.source_display_name or self.source_identifier


@dataclass(slots=True)
class QueueItemEventView:
    """Item event entry for audit trail."""

    event_id: int
    item_id: str
    event_type: str
    status_from: QueueItemStatus | None
    status_to: QueueItemStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueItemDetails:
    """Item details with event stream."""

    item: CandidateItemView
    events: list[QueueItemEventView]


@dataclass(slots=True)
class EnqueueResult:
    inserted_count: int
    duplicate_count: int
    inserted_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SelectResult:
    """Partitioned outcome of one atomic selection batch."""

    items: list[CandidateItemView]
    failed_ids: list[str]
    errors: list[NotSelectableError] = field(default_factory=list)

    @property
    def selected_ids(self) -> list[str]:
        return [item.item_id for item in self.items]


@dataclass(slots=True)
class MarkUsedResult:
    updated_count: int
    unchanged_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ResetResult:
    reset_count: int
    item_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class QueueStats:
    """Item counts by status."""

    counts: dict[QueueItemStatus, int]

    @property
    def total(self) -> int:
        return sum(self.counts.values())


@dataclass(slots=True)
class SourceDistributionEntry:
    source_identifier: str
    source_display_name: str | None
    selectable_count: int
