"""add per-subscription content filters

Revision ID: 0002_subscription_filters
Revises: 0001_uploadwatch
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_subscription_filters"
down_revision = "0001_uploadwatch"
branch_labels = None
depends_on = None


def upgrade() -> None:
    for column in ("shorts_allowed", "live_allowed", "vod_allowed"):
        op.add_column(
            "subscriptions",
            sa.Column(column, sa.Boolean(), server_default=sa.true(), nullable=False),
        )


def downgrade() -> None:
    for column in ("vod_allowed", "live_allowed", "shorts_allowed"):
        op.drop_column("subscriptions", column)
