"""add stream heads

Revision ID: 0002
Revises: 0001
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "stream_heads",
        sa.Column("stream", sa.String(), primary_key=True),
        sa.Column("last_entry_id", sa.Integer(), nullable=False, server_default="0"),
    )
    op.execute(
        "INSERT INTO stream_heads (stream, last_entry_id) "
        "SELECT stream, MAX(id) FROM stream_entries GROUP BY stream"
    )


def downgrade() -> None:
    op.drop_table("stream_heads")
