"""Initial schema - conversations, messages, message_chunks, message_attachments

Revision ID: 0001
Revises:
Create Date: 2026-10-17

Table names come from the CONVERSE_TABLE_* settings, so the migration must
run with the same environment as the application.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from converse.config import get_settings

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    names = get_settings().table_names

    # ==========================================================================
    # conversations table
    # ==========================================================================
    op.create_table(
        names.conversations,
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("uuid", sa.UUID(), nullable=False),
        sa.Column("owner_kind", sa.Text(), nullable=True),
        sa.Column("owner_id", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("context", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("uuid", name=f"uq_{names.conversations}_uuid"),
        # Owner is either fully set or fully absent
        sa.CheckConstraint(
            "(owner_kind IS NULL) = (owner_id IS NULL)",
            name=f"ck_{names.conversations}_owner_pair",
        ),
    )
    op.create_index(
        f"ix_{names.conversations}_owner",
        names.conversations,
        ["owner_kind", "owner_id"],
    )
    op.create_index(
        f"ix_{names.conversations}_deleted_at",
        names.conversations,
        ["deleted_at"],
    )

    # ==========================================================================
    # messages table
    # ==========================================================================
    op.create_table(
        names.messages,
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("uuid", sa.UUID(), nullable=False),
        sa.Column("conversation_id", sa.BigInteger(), nullable=False),
        sa.Column("role", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.Text(), server_default="success", nullable=False),
        sa.Column("is_complete", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("uuid", name=f"uq_{names.messages}_uuid"),
        sa.ForeignKeyConstraint(
            ["conversation_id"],
            [f"{names.conversations}.id"],
            ondelete="CASCADE",
        ),
        sa.CheckConstraint(
            "role IN ('user', 'assistant', 'system', 'tool_call', 'tool_result')",
            name=f"ck_{names.messages}_role",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'success', 'error')",
            name=f"ck_{names.messages}_status",
        ),
        # Pending exactly when incomplete
        sa.CheckConstraint(
            "(status = 'pending') = (NOT is_complete)",
            name=f"ck_{names.messages}_pending_incomplete",
        ),
        sa.CheckConstraint(
            "(is_complete AND completed_at IS NOT NULL) OR (NOT is_complete AND completed_at IS NULL)",
            name=f"ck_{names.messages}_completed_at",
        ),
    )
    op.create_index(
        f"ix_{names.messages}_conversation_created",
        names.messages,
        ["conversation_id", "created_at"],
    )

    # ==========================================================================
    # message_chunks table
    # ==========================================================================
    op.create_table(
        names.message_chunks,
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("message_id", sa.BigInteger(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["message_id"],
            [f"{names.messages}.id"],
            ondelete="CASCADE",
        ),
        sa.CheckConstraint("sequence >= 0", name=f"ck_{names.message_chunks}_sequence"),
        # Backstop for concurrent appenders
        sa.UniqueConstraint(
            "message_id",
            "sequence",
            name=f"uix_{names.message_chunks}_message_sequence",
        ),
    )

    # ==========================================================================
    # message_attachments table
    # ==========================================================================
    op.create_table(
        names.message_attachments,
        sa.Column("id", sa.BigInteger(), sa.Identity(), nullable=False),
        sa.Column("message_id", sa.BigInteger(), nullable=False),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("mime_type", sa.Text(), nullable=True),
        sa.Column("size", sa.BigInteger(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["message_id"],
            [f"{names.messages}.id"],
            ondelete="CASCADE",
        ),
        sa.CheckConstraint(
            "size IS NULL OR size >= 0",
            name=f"ck_{names.message_attachments}_size",
        ),
    )
    op.create_index(
        f"ix_{names.message_attachments}_message_type",
        names.message_attachments,
        ["message_id", "type"],
    )


def downgrade() -> None:
    names = get_settings().table_names

    # Drop tables in reverse order (respecting foreign key dependencies)
    op.drop_index(f"ix_{names.message_attachments}_message_type", table_name=names.message_attachments)
    op.drop_table(names.message_attachments)
    op.drop_table(names.message_chunks)
    op.drop_index(f"ix_{names.messages}_conversation_created", table_name=names.messages)
    op.drop_table(names.messages)
    op.drop_index(f"ix_{names.conversations}_deleted_at", table_name=names.conversations)
    op.drop_index(f"ix_{names.conversations}_owner", table_name=names.conversations)
    op.drop_table(names.conversations)
