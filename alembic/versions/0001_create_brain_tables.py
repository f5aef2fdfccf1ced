"""create brain tables

Revision ID: 0001
Revises:
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "brain_requests",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=True),
        sa.Column("query", sa.Text(), nullable=True),
        sa.Column("file_id", sa.String(32), nullable=True),
        sa.Column("input_type", sa.String(), nullable=False, server_default="text"),
        sa.Column("mode", sa.String(), nullable=False, server_default="default"),
        sa.Column("target_language", sa.String(), nullable=False, server_default="en"),
        sa.Column("requested_lobe", sa.String(), nullable=False, server_default="auto"),
        sa.Column("selected_lobe", sa.String(), nullable=True),
        sa.Column("router_reason", sa.Text(), nullable=True),
        sa.Column("router_confidence", sa.Float(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("output", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("claimed_at", sa.Float(), nullable=True),
        sa.Column("claim_token", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
    )
    op.create_index("ix_brain_requests_user_id", "brain_requests", ["user_id"])
    op.create_index("ix_brain_requests_status", "brain_requests", ["status"])

    op.create_table(
        "memories",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("workspace_id", sa.String(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("context", sa.Text(), nullable=True),
        sa.Column("types", sa.String(), nullable=False, server_default="answer"),
        sa.Column("brain_req_id", sa.String(32), nullable=True),
        sa.Column("vector", sa.JSON(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("decay_rate", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_review_at", sa.Float(), nullable=False),
        sa.Column("last_reviewed_at", sa.Float(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index("ix_memories_user_id", "memories", ["user_id"])

    op.create_table(
        "files",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("original_name", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=True),
        sa.Column("size", sa.Integer(), nullable=True),
        sa.Column("storage", sa.String(), nullable=False, server_default="local"),
        sa.Column("path", sa.Text(), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index("ix_files_user_id", "files", ["user_id"])

    op.create_table(
        "user_settings",
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("memory_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("vision_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notifications_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "stream_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("stream", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index("ix_stream_entries_stream", "stream_entries", ["stream"])

    op.create_table(
        "stream_groups",
        sa.Column("stream", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), primary_key=True),
        sa.Column("last_delivered_id", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "stream_pending",
        sa.Column("stream", sa.String(), primary_key=True),
        sa.Column("group", sa.String(), primary_key=True),
        sa.Column("entry_id", sa.Integer(), primary_key=True),
        sa.Column("consumer", sa.String(), nullable=False),
        sa.Column("delivered_at", sa.Float(), nullable=False),
        sa.Column("delivery_count", sa.Integer(), nullable=False, server_default="1"),
    )


def downgrade() -> None:
    op.drop_table("stream_pending")
    op.drop_table("stream_groups")
    op.drop_index("ix_stream_entries_stream", table_name="stream_entries")
    op.drop_table("stream_entries")
    op.drop_table("user_settings")
    op.drop_index("ix_files_user_id", table_name="files")
    op.drop_table("files")
    op.drop_index("ix_memories_user_id", table_name="memories")
    op.drop_table("memories")
    op.drop_index("ix_brain_requests_status", table_name="brain_requests")
    op.drop_index("ix_brain_requests_user_id", table_name="brain_requests")
    op.drop_table("brain_requests")
