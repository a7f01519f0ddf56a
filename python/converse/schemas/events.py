"""Lifecycle event payloads.

Events are handed to an EventSink after the write that produced them has
committed. ``name`` is the broadcast name; ``channel`` is where a transport
would publish it. Fields marked ``exclude=True`` only feed the channel and
are left out of the payload.
"""

from datetime import datetime
from typing import Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, Field

from converse.db.tables import MessageRole, MessageStatus
from converse.schemas.conversation import ChunkOut, ConversationOut, MessageOut


class LifecycleEvent(BaseModel):
    """Base class for all lifecycle events."""

    name: ClassVar[str]

    @property
    def channel(self) -> str:
        raise NotImplementedError

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ConversationCreated(LifecycleEvent):
    name: ClassVar[str] = "conversation.created"

    conversation_id: int
    uuid: UUID
    title: str | None
    metadata: dict[str, Any]
    created_at: datetime
    owner_kind: str | None = Field(default=None, exclude=True)
    owner_id: str | None = Field(default=None, exclude=True)

    @property
    def channel(self) -> str:
        if self.owner_kind is None:
            return "conversations"
        return f"{self.owner_kind}.{self.owner_id}"

    @classmethod
    def from_conversation(cls, conversation: ConversationOut) -> "ConversationCreated":
        return cls(
            conversation_id=conversation.id,
            uuid=conversation.uuid,
            title=conversation.title,
            metadata=conversation.metadata,
            created_at=conversation.created_at,
            owner_kind=conversation.owner_kind,
            owner_id=conversation.owner_id,
        )


class _MessageEvent(LifecycleEvent):
    message_id: int
    conversation_id: int

    @property
    def channel(self) -> str:
        return f"conversation.{self.conversation_id}"


class MessageCreated(_MessageEvent):
    name: ClassVar[str] = "message.created"

    role: MessageRole
    content: str | None
    status: MessageStatus
    is_complete: bool
    created_at: datetime

    @classmethod
    def from_message(cls, message: MessageOut) -> "MessageCreated":
        return cls(
            message_id=message.id,
            conversation_id=message.conversation_id,
            role=message.role,
            content=message.content,
            status=message.status,
            is_complete=message.is_complete,
            created_at=message.created_at,
        )


class ChunkPayload(BaseModel):
    content: str
    sequence: int
    metadata: dict[str, Any]


class ChunkReceived(_MessageEvent):
    name: ClassVar[str] = "chunk.received"

    conversation_id: int = Field(exclude=True)
    chunk: ChunkPayload

    @classmethod
    def from_chunk(cls, message: MessageOut, chunk: ChunkOut) -> "ChunkReceived":
        return cls(
            message_id=message.id,
            conversation_id=message.conversation_id,
            chunk=ChunkPayload(
                content=chunk.content,
                sequence=chunk.sequence,
                metadata=chunk.metadata,
            ),
        )


class MessageCompleted(_MessageEvent):
    """Terminal notification, shared by success and failure."""

    name: ClassVar[str] = "message.completed"

    role: MessageRole
    content: str | None
    status: MessageStatus
    is_complete: bool
    metadata: dict[str, Any]
    completed_at: datetime | None

    @classmethod
    def from_message(cls, message: MessageOut) -> "MessageCompleted":
        return cls(
            message_id=message.id,
            conversation_id=message.conversation_id,
            role=message.role,
            content=message.content,
            status=message.status,
            is_complete=message.is_complete,
            metadata=message.metadata,
            completed_at=message.completed_at,
        )
