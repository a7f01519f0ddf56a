"""Table definitions for Converse.

Tables are built with SQLAlchemy Core from an explicit TableNames struct, so
the storage layer can be constructed against any naming scheme without
mutating module state. Enums are defined as Python enums and stored as text
guarded by CHECK constraints.
"""

from dataclasses import dataclass
from enum import Enum as PyEnum
from functools import lru_cache

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    true,
)
from sqlalchemy.dialects.postgresql import JSONB

from converse.config import TableNames, get_settings

# =============================================================================
# Enums
# =============================================================================


class MessageRole(str, PyEnum):
    """Roles for messages in a conversation."""

    user = "user"
    assistant = "assistant"
    system = "system"
    tool_call = "tool_call"
    tool_result = "tool_result"


class MessageStatus(str, PyEnum):
    """Message lifecycle states.

    States:
        pending: Opened for streaming, still receiving chunks
        success: Terminal, content is final
        error: Terminal, metadata carries the error description
    """

    pending = "pending"
    success = "success"
    error = "error"


TERMINAL_STATUSES = frozenset({MessageStatus.success, MessageStatus.error})

# =============================================================================
# Column types
# =============================================================================

# SQLite only autoincrements INTEGER PRIMARY KEY
IdType = BigInteger().with_variant(Integer(), "sqlite")
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _timestamp(name: str, nullable: bool = False) -> Column:
    return Column(name, DateTime(timezone=True), nullable=nullable)


def _in_list(column: str, values: type[PyEnum]) -> str:
    quoted = ", ".join(f"'{member.value}'" for member in values)
    return f"{column} IN ({quoted})"


# =============================================================================
# Tables
# =============================================================================


@dataclass(frozen=True)
class Tables:
    """The four tables plus the MetaData they were built on."""

    names: TableNames
    metadata: MetaData
    conversations: Table
    messages: Table
    message_chunks: Table
    message_attachments: Table


@lru_cache
def build_tables(names: TableNames) -> Tables:
    """Build the schema for the given table names.

    Calls with equal names return the same Tables instance.
    """
    metadata = MetaData()

    conversations = Table(
        names.conversations,
        metadata,
        Column("id", IdType, primary_key=True, autoincrement=True),
        Column("uuid", Uuid(), nullable=False, unique=True),
        Column("owner_kind", Text, nullable=True),
        Column("owner_id", Text, nullable=True),
        Column("title", Text, nullable=True),
        Column("metadata", JsonType, nullable=True),
        Column("context", JsonType, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("deleted_at", nullable=True),
        CheckConstraint(
            "(owner_kind IS NULL) = (owner_id IS NULL)",
            name=f"ck_{names.conversations}_owner_pair",
        ),
        Index(f"ix_{names.conversations}_owner", "owner_kind", "owner_id"),
        Index(f"ix_{names.conversations}_deleted_at", "deleted_at"),
    )

    messages = Table(
        names.messages,
        metadata,
        Column("id", IdType, primary_key=True, autoincrement=True),
        Column("uuid", Uuid(), nullable=False, unique=True),
        Column(
            "conversation_id",
            IdType,
            ForeignKey(f"{names.conversations}.id", ondelete="CASCADE"),
            nullable=False,
        ),
        Column("role", Text, nullable=False),
        Column("content", Text, nullable=True),
        Column("metadata", JsonType, nullable=True),
        Column("status", Text, nullable=False, server_default=MessageStatus.success.value),
        Column("is_complete", Boolean, nullable=False, server_default=true()),
        _timestamp("completed_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("deleted_at", nullable=True),
        CheckConstraint(_in_list("role", MessageRole), name=f"ck_{names.messages}_role"),
        CheckConstraint(_in_list("status", MessageStatus), name=f"ck_{names.messages}_status"),
        CheckConstraint(
            "(status = 'pending') = (NOT is_complete)",
            name=f"ck_{names.messages}_pending_incomplete",
        ),
        CheckConstraint(
            "(is_complete AND completed_at IS NOT NULL) OR (NOT is_complete AND completed_at IS NULL)",
            name=f"ck_{names.messages}_completed_at",
        ),
        Index(f"ix_{names.messages}_conversation_created", "conversation_id", "created_at"),
    )

    message_chunks = Table(
        names.message_chunks,
        metadata,
        Column("id", IdType, primary_key=True, autoincrement=True),
        Column(
            "message_id",
            IdType,
            ForeignKey(f"{names.messages}.id", ondelete="CASCADE"),
            nullable=False,
        ),
        Column("content", Text, nullable=False),
        Column("sequence", Integer, nullable=False),
        Column("metadata", JsonType, nullable=True),
        _timestamp("created_at"),
        CheckConstraint("sequence >= 0", name=f"ck_{names.message_chunks}_sequence"),
        UniqueConstraint(
            "message_id", "sequence", name=f"uix_{names.message_chunks}_message_sequence"
        ),
    )

    message_attachments = Table(
        names.message_attachments,
        metadata,
        Column("id", IdType, primary_key=True, autoincrement=True),
        Column(
            "message_id",
            IdType,
            ForeignKey(f"{names.messages}.id", ondelete="CASCADE"),
            nullable=False,
        ),
        Column("type", Text, nullable=False),
        Column("path", Text, nullable=False),
        Column("mime_type", Text, nullable=True),
        Column("size", BigInteger, nullable=True),
        Column("metadata", JsonType, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        CheckConstraint("size IS NULL OR size >= 0", name=f"ck_{names.message_attachments}_size"),
        Index(f"ix_{names.message_attachments}_message_type", "message_id", "type"),
    )

    return Tables(
        names=names,
        metadata=metadata,
        conversations=conversations,
        messages=messages,
        message_chunks=message_chunks,
        message_attachments=message_attachments,
    )


def get_tables() -> Tables:
    """Get the tables for the configured table names."""
    return build_tables(get_settings().table_names)
