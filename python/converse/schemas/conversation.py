"""Conversation, Message, Chunk and Attachment Pydantic schemas.

Records returned by the service layer, plus the request bodies accepted by
the HTTP routes. Records are built from table rows with
``Model.model_validate(dict(row))`` over a row mapping.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from converse.db.tables import MessageRole, MessageStatus

# =============================================================================
# Records
# =============================================================================


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("metadata", mode="before", check_fields=False)
    @classmethod
    def _empty_metadata(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("*", mode="after")
    @classmethod
    def _utc_datetimes(cls, value: Any) -> Any:
        # SQLite hands back naive datetimes; every stored timestamp is UTC
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class OwnerRef(BaseModel):
    """Identifies the entity a conversation belongs to, e.g. ("user", "42")."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(min_length=1)
    id: str = Field(min_length=1)

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


class ConversationOut(_Record):
    """A conversation, optionally associated with an owner."""

    id: int
    uuid: UUID
    owner_kind: str | None = None
    owner_id: str | None = None
    title: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    @field_validator("context", mode="before")
    @classmethod
    def _empty_context(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def owner(self) -> OwnerRef | None:
        if self.owner_kind is None or self.owner_id is None:
            return None
        return OwnerRef(kind=self.owner_kind, id=self.owner_id)


class MessageOut(_Record):
    """A single message in a conversation.

    Content is mutable only while status is pending.
    """

    id: int
    uuid: UUID
    conversation_id: int
    role: MessageRole
    content: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: MessageStatus
    is_complete: bool
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_pending(self) -> bool:
        return self.status == MessageStatus.pending

    @property
    def is_tool_call(self) -> bool:
        return self.role == MessageRole.tool_call

    @property
    def is_tool_result(self) -> bool:
        return self.role == MessageRole.tool_result

    @property
    def tool_call_id(self) -> str | None:
        return self.metadata.get("tool_call_id")

    @property
    def tool_name(self) -> str | None:
        return self.metadata.get("tool_name")


class ChunkOut(_Record):
    """A content fragment appended to a streaming message. Immutable."""

    id: int
    message_id: int
    content: str
    sequence: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class AttachmentOut(_Record):
    """Metadata for a file attached to a message."""

    id: int
    message_id: int
    type: str
    path: str
    mime_type: str | None = None
    size: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class ConversationWithMessages(ConversationOut):
    """A conversation together with a selection of its messages."""

    messages: list[MessageOut] = Field(default_factory=list)


# =============================================================================
# Request Schemas
# =============================================================================


class CreateConversationRequest(BaseModel):
    """Request body for creating a conversation."""

    title: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    owner_kind: str | None = None
    owner_id: str | None = None


class AddMessagesRequest(BaseModel):
    """Request body for batch ingestion.

    Entries are plain strings or objects with ``role``/``content`` or
    ``type``/``content``; shape checking happens in the ingestion service.
    """

    messages: list[Any]


class StartStreamingRequest(BaseModel):
    """Request body for opening a streaming message."""

    role: MessageRole = MessageRole.assistant
    metadata: dict[str, Any] = Field(default_factory=dict)


class AppendChunkRequest(BaseModel):
    """Request body for appending a chunk to a streaming message."""

    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class CompleteStreamingRequest(BaseModel):
    """Request body for finalizing a streaming message."""

    metadata: dict[str, Any] = Field(default_factory=dict)


class FailStreamingRequest(BaseModel):
    """Request body for failing a streaming message."""

    error: str
    metadata: dict[str, Any] = Field(default_factory=dict)
