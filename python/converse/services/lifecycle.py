"""Message lifecycle: creation, streaming assembly and finalization.

State machine:
    pending --complete_streaming--> success
    pending --fail_streaming/mark_error--> error

A message created with content is born terminal (success). A message opened
for streaming starts pending with empty content and is assembled from chunks
until it is completed or failed.

Rules:
- append_chunk requires pending; terminal messages reject it with
  InvalidStateError and nothing is written
- complete_streaming / fail_streaming may be called again on a terminal
  message; each call re-finalizes (metadata merged again, completed_at reset)
- is_complete is true exactly when status is terminal, and completed_at is
  set exactly when is_complete is true
- Tombstoned messages are invisible: every operation raises NotFoundError

Events are published only after the transaction that produced them commits.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, insert, select, update
from sqlalchemy.orm import Session

from converse.db.session import transaction
from converse.db.tables import MessageRole, MessageStatus, Tables, get_tables
from converse.errors import ErrorCode, InvalidInputError, InvalidStateError, NotFoundError
from converse.logging import get_logger, log_context
from converse.schemas.conversation import ChunkOut, MessageOut
from converse.schemas.events import ChunkReceived, MessageCompleted, MessageCreated
from converse.services.events import EventSink, dispatch_event, get_event_sink
from converse.services.sequencer import ChunkSequencer

logger = get_logger(__name__)


def coerce_role(role: MessageRole | str) -> MessageRole:
    """Accept a MessageRole or its string tag.

    Raises:
        InvalidInputError: If the tag is not a known role.
    """
    if isinstance(role, MessageRole):
        return role
    try:
        return MessageRole(role)
    except ValueError:
        raise InvalidInputError(f"Unknown message role: {role}") from None


def message_not_found(message_id: int | UUID) -> NotFoundError:
    return NotFoundError(ErrorCode.E_MESSAGE_NOT_FOUND, f"Message {message_id} not found")


class MessageLifecycle:
    """State transitions for messages, backed by the message and chunk tables."""

    def __init__(
        self,
        db: Session,
        tables: Tables | None = None,
        sink: EventSink | None = None,
    ):
        self.db = db
        self.tables = tables or get_tables()
        self.sink = sink or get_event_sink()
        self.sequencer = ChunkSequencer(db, self.tables)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, message_id: int, include_deleted: bool = False) -> MessageOut:
        """Load a message by id.

        Raises:
            NotFoundError(E_MESSAGE_NOT_FOUND): If missing, or tombstoned and
                include_deleted is False.
        """
        messages = self.tables.messages
        query = select(messages).where(messages.c.id == message_id)
        if not include_deleted:
            query = query.where(messages.c.deleted_at.is_(None))
        row = self.db.execute(query).mappings().first()
        if row is None:
            raise message_not_found(message_id)
        return MessageOut.model_validate(dict(row))

    def get_by_uuid(self, message_uuid: UUID, include_deleted: bool = False) -> MessageOut:
        messages = self.tables.messages
        query = select(messages).where(messages.c.uuid == message_uuid)
        if not include_deleted:
            query = query.where(messages.c.deleted_at.is_(None))
        row = self.db.execute(query).mappings().first()
        if row is None:
            raise message_not_found(message_uuid)
        return MessageOut.model_validate(dict(row))

    def list_for_conversation(
        self,
        conversation_id: int,
        *,
        role: MessageRole | str | None = None,
        status: MessageStatus | None = None,
        complete: bool | None = None,
        include_deleted: bool = False,
    ) -> list[MessageOut]:
        """Messages of a conversation in creation order.

        Filters:
            role: Only messages of this role.
            status: Only messages in this status (``error`` selects failed ones).
            complete: True for completed messages, False for still-streaming ones.
        """
        messages = self.tables.messages
        query = select(messages).where(messages.c.conversation_id == conversation_id)
        if not include_deleted:
            query = query.where(messages.c.deleted_at.is_(None))
        if role is not None:
            query = query.where(messages.c.role == coerce_role(role).value)
        if status is not None:
            query = query.where(messages.c.status == MessageStatus(status).value)
        if complete is not None:
            query = query.where(messages.c.is_complete == complete)
        query = query.order_by(messages.c.created_at, messages.c.id)
        return [MessageOut.model_validate(dict(row)) for row in self.db.execute(query).mappings()]

    def chunks(self, message_id: int) -> list[ChunkOut]:
        self.get(message_id)
        return self.sequencer.list_chunks(message_id)

    # =========================================================================
    # Creation
    # =========================================================================

    def insert(
        self,
        conversation_id: int,
        role: MessageRole | str,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        streaming: bool = False,
    ) -> MessageOut:
        """Insert a message without committing or publishing.

        Non-empty content creates a terminal success message. Empty content
        with ``streaming`` opens a pending message; empty content without it
        creates an empty, complete success message.

        Raises:
            NotFoundError(E_CONVERSATION_NOT_FOUND): If the conversation is
                missing or tombstoned.
            InvalidInputError: If the role tag is unknown.
        """
        role = coerce_role(role)
        self.lock_live_conversation(conversation_id)

        now = datetime.now(UTC)
        metadata = dict(metadata or {})

        if content:
            status, is_complete, completed_at = MessageStatus.success, True, now
        elif streaming:
            content = ""
            metadata["streamed"] = True
            status, is_complete, completed_at = MessageStatus.pending, False, None
        else:
            status, is_complete, completed_at = MessageStatus.success, True, now

        messages = self.tables.messages
        values = {
            "uuid": uuid4(),
            "conversation_id": conversation_id,
            "role": role.value,
            "content": content,
            "metadata": metadata,
            "status": status.value,
            "is_complete": is_complete,
            "completed_at": completed_at,
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
        }
        result = self.db.execute(insert(messages).values(**values))

        return MessageOut.model_validate({"id": result.inserted_primary_key[0], **values})

    def announce_created(self, message: MessageOut) -> None:
        """Publish MessageCreated for a committed message."""
        logger.info(
            "message_created",
            conversation_id=message.conversation_id,
            message_id=message.id,
            role=message.role.value,
            status=message.status.value,
        )
        dispatch_event(self.sink, MessageCreated.from_message(message))

    def create(
        self,
        conversation_id: int,
        role: MessageRole | str,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        streaming: bool = False,
    ) -> MessageOut:
        """Create and commit a message, then publish MessageCreated."""
        with log_context(conversation_id=conversation_id), transaction(self.db):
            message = self.insert(conversation_id, role, content, metadata, streaming=streaming)
        self.announce_created(message)
        return message

    def start_streaming(
        self,
        conversation_id: int,
        role: MessageRole | str = MessageRole.assistant,
        metadata: dict[str, Any] | None = None,
    ) -> MessageOut:
        """Open a pending message with empty content."""
        return self.create(conversation_id, role, None, metadata, streaming=True)

    # =========================================================================
    # Streaming
    # =========================================================================

    def append_chunk(
        self,
        message_id: int,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChunkOut:
        """Append a chunk to a pending message.

        The chunk row and the extended message content are written in one
        transaction while the message row is locked. An empty chunk still
        consumes a sequence number.

        Raises:
            NotFoundError(E_MESSAGE_NOT_FOUND): If the message is missing or tombstoned.
            InvalidStateError: If the message is already terminal.
            ConstraintViolationError: If a concurrent append took the sequence.
        """
        messages = self.tables.messages

        with log_context(message_id=message_id), transaction(self.db):
            row = self.sequencer.lock_message(message_id)
            if row is None or row["deleted_at"] is not None:
                raise message_not_found(message_id)
            if row["status"] != MessageStatus.pending.value:
                raise InvalidStateError(
                    f"Message {message_id} is {row['status']}; "
                    "chunks can only be appended to a pending message"
                )

            chunk = self.sequencer.append(message_id, content, metadata)
            assembled = (row["content"] or "") + content
            self.db.execute(
                update(messages)
                .where(messages.c.id == message_id)
                .values(content=assembled, updated_at=chunk.created_at)
            )

        message = MessageOut.model_validate(
            {**dict(row), "content": assembled, "updated_at": chunk.created_at}
        )
        logger.debug(
            "chunk_appended",
            message_id=message_id,
            sequence=chunk.sequence,
            length=len(content),
        )
        dispatch_event(self.sink, ChunkReceived.from_chunk(message, chunk))
        return chunk

    def complete_streaming(
        self,
        message_id: int,
        final_metadata: dict[str, Any] | None = None,
    ) -> MessageOut:
        """Finalize a message as success and record its chunk count."""
        message = self._finalize(
            message_id, MessageStatus.success, dict(final_metadata or {}), count_chunks=True
        )
        dispatch_event(self.sink, MessageCompleted.from_message(message))
        return message

    def fail_streaming(
        self,
        message_id: int,
        error: str,
        error_metadata: dict[str, Any] | None = None,
    ) -> MessageOut:
        """Finalize a message as error. Also the way to cancel a stream."""
        extra = {**(error_metadata or {}), "error": error}
        message = self._finalize(message_id, MessageStatus.error, extra, count_chunks=True)
        dispatch_event(self.sink, MessageCompleted.from_message(message))
        return message

    def mark_error(
        self,
        message_id: int,
        error: str,
        error_metadata: dict[str, Any] | None = None,
    ) -> MessageOut:
        """Move a message straight to error, without chunk bookkeeping.

        For failures outside a stream, e.g. a provider call that never started.
        """
        extra = {**(error_metadata or {}), "error": error}
        return self._finalize(message_id, MessageStatus.error, extra, count_chunks=False)

    def _finalize(
        self,
        message_id: int,
        status: MessageStatus,
        extra_metadata: dict[str, Any],
        count_chunks: bool,
    ) -> MessageOut:
        messages = self.tables.messages
        now = datetime.now(UTC)

        with log_context(message_id=message_id), transaction(self.db):
            row = self.sequencer.lock_message(message_id)
            if row is None or row["deleted_at"] is not None:
                raise message_not_found(message_id)

            metadata = {**(row["metadata"] or {}), **extra_metadata}
            if count_chunks:
                metadata["chunks"] = self.sequencer.count(message_id)

            self.db.execute(
                update(messages)
                .where(messages.c.id == message_id)
                .values(
                    status=status.value,
                    is_complete=True,
                    completed_at=now,
                    metadata=metadata,
                    updated_at=now,
                )
            )

        logger.info(
            "message_finalized",
            message_id=message_id,
            status=status.value,
            previous_status=row["status"],
        )
        return self.get(message_id)

    # =========================================================================
    # Tombstones
    # =========================================================================

    def delete(self, message_id: int) -> MessageOut:
        """Soft-delete a single message."""
        messages = self.tables.messages
        now = datetime.now(UTC)
        with transaction(self.db):
            result = self.db.execute(
                update(messages)
                .where(messages.c.id == message_id, messages.c.deleted_at.is_(None))
                .values(deleted_at=now, updated_at=now)
            )
            if result.rowcount == 0:
                raise message_not_found(message_id)
        logger.info("message_soft_deleted", message_id=message_id)
        return self.get(message_id, include_deleted=True)

    def restore(self, message_id: int) -> MessageOut:
        """Clear a message's tombstone.

        Raises:
            InvalidStateError: If its conversation is tombstoned; restoring the
                message alone would leave a live message in a deleted conversation.
        """
        messages = self.tables.messages
        message = self.get(message_id, include_deleted=True)

        with transaction(self.db):
            try:
                self.lock_live_conversation(message.conversation_id)
            except NotFoundError:
                raise InvalidStateError(
                    f"Message {message_id} belongs to a deleted conversation; "
                    "restore the conversation"
                ) from None
            self.db.execute(
                update(messages)
                .where(messages.c.id == message_id)
                .values(deleted_at=None, updated_at=datetime.now(UTC))
            )
        logger.info("message_restored", message_id=message_id)
        return self.get(message_id)

    def force_delete(self, message_id: int) -> None:
        """Remove a message row; chunks and attachments go by FK cascade."""
        messages = self.tables.messages
        with transaction(self.db):
            result = self.db.execute(delete(messages).where(messages.c.id == message_id))
            if result.rowcount == 0:
                raise message_not_found(message_id)
        logger.info("message_force_deleted", message_id=message_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def lock_live_conversation(self, conversation_id: int) -> None:
        """Share-lock a live conversation row for the rest of the transaction.

        Message writers hold the share lock, so a cascade delete or restore
        (which takes the row exclusively) waits for them to commit, and they
        wait for it. After waiting, the row is re-checked against its
        committed tombstone.

        Raises:
            NotFoundError(E_CONVERSATION_NOT_FOUND): If missing or tombstoned.
        """
        conversations = self.tables.conversations
        found = self.db.scalar(
            select(conversations.c.id)
            .where(
                conversations.c.id == conversation_id,
                conversations.c.deleted_at.is_(None),
            )
            .with_for_update(read=True)
        )
        if found is None:
            raise NotFoundError(
                ErrorCode.E_CONVERSATION_NOT_FOUND,
                f"Conversation {conversation_id} not found",
            )
