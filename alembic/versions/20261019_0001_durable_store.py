"""Durable store records and list items."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "store_records",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_store_records_expires_at", "store_records", ["expires_at"])

    op.create_table(
        "store_list_items",
        sa.Column("item_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("list_key", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_store_list_items_list_key", "store_list_items", ["list_key"])
    op.create_index(
        "ix_store_list_items_key_item_id",
        "store_list_items",
        ["list_key", "item_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_store_list_items_key_item_id", table_name="store_list_items")
    op.drop_index("ix_store_list_items_list_key", table_name="store_list_items")
    op.drop_table("store_list_items")
    op.drop_index("ix_store_records_expires_at", table_name="store_records")
    op.drop_table("store_records")
