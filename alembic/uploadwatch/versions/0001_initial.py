"""initial uploadwatch schema

Revision ID: 0001_uploadwatch
Revises:
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_uploadwatch"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sources",
        sa.Column("source_id", sa.String(), nullable=False),
        sa.Column("source_url", sa.String(), nullable=False),
        sa.Column("checkpoint_published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("checkpoint_item_id", sa.String(), nullable=True),
        sa.Column("pending_cursor", sa.String(), nullable=True),
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("source_id"),
    )

    op.create_table(
        "pending_items",
        sa.Column("source_id", sa.String(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("channel_title", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["source_id"], ["sources.source_id"]),
        sa.PrimaryKeyConstraint("source_id", "item_id"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.String(), nullable=False),
        sa.Column("destination", sa.String(), nullable=False),
        sa.Column("source_id", sa.String(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["source_id"], ["sources.source_id"]),
        sa.PrimaryKeyConstraint("subscription_id"),
        sa.UniqueConstraint("destination", "source_id", name="uq_subscription_destination_source"),
    )
    op.create_index("ix_subscriptions_destination", "subscriptions", ["destination"])
    op.create_index("ix_subscriptions_source_id", "subscriptions", ["source_id"])
    op.create_index("ix_subscriptions_active", "subscriptions", ["active"])

    op.create_table(
        "ledger_entries",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=False),
        sa.Column("source_id", sa.String(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.subscription_id"]),
        sa.PrimaryKeyConstraint("item_id", "subscription_id"),
    )
    op.create_index("ix_ledger_entries_source_id", "ledger_entries", ["source_id"])

    op.create_table(
        "quota_state",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("consumed", sa.Integer(), nullable=False),
        sa.Column("window_started_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )

    op.create_table(
        "dispatch_failures",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=False),
        sa.Column("source_id", sa.String(), nullable=False),
        sa.Column("destination", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("error", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("failed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("item_id", "subscription_id"),
    )
    op.create_index("ix_dispatch_failures_source_id", "dispatch_failures", ["source_id"])


def downgrade() -> None:
    op.drop_index("ix_dispatch_failures_source_id", table_name="dispatch_failures")
    op.drop_table("dispatch_failures")
    op.drop_table("quota_state")
    op.drop_index("ix_ledger_entries_source_id", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_subscriptions_active", table_name="subscriptions")
    op.drop_index("ix_subscriptions_source_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_destination", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("pending_items")
    op.drop_table("sources")
