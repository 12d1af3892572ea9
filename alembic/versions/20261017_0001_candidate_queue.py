"""Create candidate queue tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queue_items",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("external_ref", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("excerpt", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("source_identifier", sa.String(), nullable=False),
        sa.Column("source_display_name", sa.String(), nullable=True),
        sa.Column("source_url", sa.String(), nullable=True),
        sa.Column("synthesis_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("relevance_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("uniqueness_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("skip_reason", sa.String(), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("selected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consuming_article_id", sa.String(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index(
        "uq_queue_items_source_title",
        "queue_items",
        ["source_identifier", "title"],
        unique=True,
    )
    op.create_index(
        "uq_queue_items_external_ref",
        "queue_items",
        ["external_ref"],
        unique=True,
        sqlite_where=sa.text("external_ref IS NOT NULL"),
    )
    op.create_index(
        "idx_queue_items_status_expires",
        "queue_items",
        ["status", "expires_at"],
    )
    op.create_index(
        "idx_queue_items_status_selected",
        "queue_items",
        ["status", "selected_at"],
    )
    op.create_index("ix_queue_items_source_identifier", "queue_items", ["source_identifier"])
    op.create_index("ix_queue_items_total_score", "queue_items", ["total_score"])
    op.create_index("ix_queue_items_status", "queue_items", ["status"])
    op.create_index(
        "ix_queue_items_consuming_article_id",
        "queue_items",
        ["consuming_article_id"],
    )

    op.create_table(
        "queue_item_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["item_id"], ["queue_items.item_id"], ondelete="CASCADE"),
    )
    op.create_index("ix_queue_item_events_item_id", "queue_item_events", ["item_id"])


def downgrade() -> None:
    op.drop_table("queue_item_events")
    op.drop_table("queue_items")
