"""Data types flowing through the synthesis pipeline."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from news_synth.queue.models import CandidateItemView

EXCERPT_BULLET_COUNT = 3
EXCERPT_BULLET_MAX_CHARS = 65


@dataclass(slots=True, frozen=True)
class PipelineItem:
    """One candidate item as seen by the generation pipeline."""

    item_id: str
    title: str
    content: str | None
    source_identifier: str
    source_display_name: str | None = None
    source_url: str | None = None

    @property
    def source_label(self) -> str:
        return self.source_display_name or self.source_identifier

    @classmethod
    def from_queue_item(cls, item: CandidateItemView) -> PipelineItem:
        return cls(
            item_id=item.item_id,
            title=item.title,
            content=item.content or item.excerpt,
            source_identifier=item.source_identifier,
            source_display_name=item.source_display_name,
            source_url=item.source_url,
        )


@dataclass(slots=True, frozen=True)
class ArticlePlan:
    """Document structure fixed before any section is written.

    ``ordering`` is a permutation of the 1-based item indexes of the run and
    ``headings`` maps those indexes to section headings.
    """

    thesis: str
    ordering: tuple[int, ...]
    headings: Mapping[int, str]
    title: str
    excerpt_bullets: tuple[str, ...]
    category: str
    intro_paragraph: str
    is_fallback: bool = False

    def heading_for(self, index: int, item: PipelineItem) -> str:
        heading = self.headings.get(index, "").strip()
        return heading or item.title


@dataclass(slots=True, frozen=True)
class Section:
    """Generated text for one planned position."""

    position: int
    item_index: int
    item_id: str
    heading: str
    text: str
    failed: bool = False
    error: str | None = None


class PipelineEventKind(str, Enum):
    """Progress events, emitted in this order for every run."""

    PLANNING_STARTED = "planning-started"
    PLANNED = "planned"
    METADATA_READY = "metadata-ready"
    WRITING_STARTED = "writing-started"
    SECTION_READY = "section-ready"
    WRITTEN = "written"
    ASSEMBLED = "assembled"


@dataclass(slots=True, frozen=True)
class PipelineEvent:
    kind: PipelineEventKind
    message: str | None = None
    position: int | None = None
    total: int | None = None
    title: str | None = None
    text: str | None = None
    plan: ArticlePlan | None = None
    section: Section | None = None


@dataclass(slots=True)
class SynthesisResult:
    """Collected outcome of one pipeline run."""

    plan: ArticlePlan
    sections: list[Section] = field(default_factory=list)
    document: str = ""

    @property
    def failed_positions(self) -> list[int]:
        return [section.position for section in self.sections if section.failed]

    @property
    def item_ids(self) -> list[str]:
        return [section.item_id for section in self.sections]
