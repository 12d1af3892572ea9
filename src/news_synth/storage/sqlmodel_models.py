"""SQLModel ORM tables for the candidate queue store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class QueueItem(SQLModel, table=True):
    __tablename__ = "queue_items"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_queue_items_source_title",
            "source_identifier",
            "title",
            unique=True,
        ),
        Index(
            "uq_queue_items_external_ref",
            "external_ref",
            unique=True,
            sqlite_where=text("external_ref IS NOT NULL"),
        ),
        Index("idx_queue_items_status_expires", "status", "expires_at"),
        Index("idx_queue_items_status_selected", "status", "selected_at"),
    )

    item_id: str = Field(primary_key=True)
    external_ref: str | None = None
    title: str
    excerpt: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    content: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    source_identifier: str = Field(index=True)
    source_display_name: str | None = None
    source_url: str | None = None
    synthesis_score: float = 0.0
    relevance_score: float = 0.0
    uniqueness_score: float = 0.0
    total_score: float = Field(default=0.0, index=True)
    status: str = Field(index=True)
    skip_reason: str | None = None
    queued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    selected_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    used_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    consuming_article_id: str | None = Field(default=None, index=True)
    metadata_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueItemEvent(SQLModel, table=True):
    __tablename__ = "queue_item_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    item_id: str = Field(
        sa_column=Column(
            ForeignKey("queue_items.item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
