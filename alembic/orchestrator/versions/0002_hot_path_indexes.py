"""add hot-path indexes for status polling and outbox claims

Revision ID: 0002_hot_path_indexes
Revises: 0001_onetouch
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_hot_path_indexes"
down_revision = "0001_onetouch"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_payments_order_ref_created_at",
        "payments",
        ["order_ref", "created_at"],
    )
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_payments_order_ref_created_at", table_name="payments")
