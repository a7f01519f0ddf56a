"""Conversation aggregate and conversation-level service functions.

A conversation owns its messages. Deleting, restoring and force-deleting a
conversation cascade to its messages inside the same transaction:

- delete: the conversation and every live message get the same tombstone
- restore: the conversation tombstone is cleared, together with the
  tombstones of messages that carry exactly that timestamp. Messages
  deleted on their own before the conversation keep their tombstone
- force_delete: every message row (tombstoned or not) and then the
  conversation row are removed; chunks and attachments follow by FK cascade

Delete and restore lock the conversation row exclusively before touching
messages. Message writers share-lock the same row, so a message is never
created or restored inside a conversation that a concurrent delete is
tombstoning.

Aggregates are built by the service functions in this module; callers never
construct one from an unsaved row.
"""

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, runtime_checkable
from uuid import UUID, uuid4

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.orm import Session

from converse.db.session import transaction
from converse.db.tables import MessageRole, Tables, get_tables
from converse.errors import ErrorCode, InvalidInputError, InvalidStateError, NotFoundError
from converse.logging import get_logger, log_context
from converse.schemas.conversation import (
    ConversationOut,
    ConversationWithMessages,
    MessageOut,
    OwnerRef,
)
from converse.schemas.events import ConversationCreated
from converse.services.events import EventSink, dispatch_event, get_event_sink
from converse.services.ingestion import IngestionDispatcher
from converse.services.lifecycle import MessageLifecycle

logger = get_logger(__name__)


@runtime_checkable
class Renderable(Protocol):
    """Anything that renders itself to message text, e.g. a prompt template."""

    def render(self) -> str: ...


MessageContent = str | Renderable | None
# A value tested for truth, or a callable that receives the aggregate.
Condition = Any


def normalize_content(content: MessageContent) -> str | None:
    """Render template-like objects; plain strings and None pass through."""
    if isinstance(content, Renderable):
        return str(content.render())
    return content


def conversation_not_found(conversation_id: int | UUID) -> NotFoundError:
    return NotFoundError(
        ErrorCode.E_CONVERSATION_NOT_FOUND, f"Conversation {conversation_id} not found"
    )


class ConversationAggregate:
    """A loaded conversation plus the operations that act on it and its messages."""

    def __init__(
        self,
        db: Session,
        conversation: ConversationOut,
        tables: Tables | None = None,
        sink: EventSink | None = None,
    ):
        self.db = db
        self.conversation = conversation
        self.tables = tables or get_tables()
        self.sink = sink or get_event_sink()
        self.lifecycle = MessageLifecycle(db, self.tables, self.sink)

    def __repr__(self) -> str:
        return f"ConversationAggregate(id={self.id}, uuid={self.uuid})"

    @property
    def id(self) -> int:
        return self.conversation.id

    @property
    def uuid(self) -> UUID:
        return self.conversation.uuid

    @property
    def is_deleted(self) -> bool:
        return self.conversation.is_deleted

    # =========================================================================
    # Adding messages
    # =========================================================================

    def add_message(
        self,
        role: MessageRole | str,
        content: MessageContent = None,
        metadata: dict[str, Any] | None = None,
    ) -> "ConversationAggregate":
        """Create a message and return the aggregate for chaining."""
        self.create_message(role, content, metadata)
        return self

    def add_user_message(self, content: MessageContent, metadata: dict[str, Any] | None = None):
        return self.add_message(MessageRole.user, content, metadata)

    def add_assistant_message(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ):
        return self.add_message(MessageRole.assistant, content, metadata)

    def add_system_message(self, content: MessageContent, metadata: dict[str, Any] | None = None):
        return self.add_message(MessageRole.system, content, metadata)

    def add_tool_call_message(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ):
        return self.add_message(MessageRole.tool_call, content, metadata)

    def add_tool_result_message(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ):
        return self.add_message(MessageRole.tool_result, content, metadata)

    def create_message(
        self,
        role: MessageRole | str,
        content: MessageContent = None,
        metadata: dict[str, Any] | None = None,
    ) -> MessageOut:
        """Create a message and return it."""
        return self.lifecycle.create(self.id, role, normalize_content(content), metadata)

    def create_user_message(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ) -> MessageOut:
        return self.create_message(MessageRole.user, content, metadata)

    def create_assistant_message(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ) -> MessageOut:
        return self.create_message(MessageRole.assistant, content, metadata)

    def create_system_message(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ) -> MessageOut:
        return self.create_message(MessageRole.system, content, metadata)

    def create_tool_call_message(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ) -> MessageOut:
        return self.create_message(MessageRole.tool_call, content, metadata)

    def create_tool_result_message(
        self, content: MessageContent, metadata: dict[str, Any] | None = None
    ) -> MessageOut:
        return self.create_message(MessageRole.tool_result, content, metadata)

    def start_streaming_message(
        self,
        role: MessageRole | str = MessageRole.assistant,
        metadata: dict[str, Any] | None = None,
    ) -> MessageOut:
        return self.lifecycle.start_streaming(self.id, role, metadata)

    def start_streaming_assistant(self, metadata: dict[str, Any] | None = None) -> MessageOut:
        return self.start_streaming_message(MessageRole.assistant, metadata)

    def start_streaming_user(self, metadata: dict[str, Any] | None = None) -> MessageOut:
        return self.start_streaming_message(MessageRole.user, metadata)

    def add_messages(self, entries: Iterable[Any]) -> list[MessageOut]:
        """Ingest a batch of heterogeneous entries, all or nothing."""
        return IngestionDispatcher(self.lifecycle).ingest(self.id, entries)

    # =========================================================================
    # Conditional helpers
    # =========================================================================

    def _holds(self, condition: Condition) -> bool:
        if callable(condition):
            condition = condition(self)
        return bool(condition)

    def add_message_if(
        self,
        condition: Condition,
        role: MessageRole | str,
        content: MessageContent = None,
        metadata: dict[str, Any] | None = None,
    ) -> "ConversationAggregate":
        """Add a message when ``condition`` holds; return the aggregate either way.

        ``condition`` is any value tested for truth, or a callable that
        receives the aggregate.
        """
        if self._holds(condition):
            self.add_message(role, content, metadata)
        return self

    def add_message_unless(
        self,
        condition: Condition,
        role: MessageRole | str,
        content: MessageContent = None,
        metadata: dict[str, Any] | None = None,
    ) -> "ConversationAggregate":
        if not self._holds(condition):
            self.add_message(role, content, metadata)
        return self

    def create_message_if(
        self,
        condition: Condition,
        role: MessageRole | str,
        content: MessageContent = None,
        metadata: dict[str, Any] | None = None,
    ) -> MessageOut | None:
        """Create a message when ``condition`` holds, else return None."""
        if self._holds(condition):
            return self.create_message(role, content, metadata)
        return None

    def create_message_unless(
        self,
        condition: Condition,
        role: MessageRole | str,
        content: MessageContent = None,
        metadata: dict[str, Any] | None = None,
    ) -> MessageOut | None:
        if not self._holds(condition):
            return self.create_message(role, content, metadata)
        return None

    def add_user_message_if(self, condition: Condition, content: MessageContent, metadata=None):
        return self.add_message_if(condition, MessageRole.user, content, metadata)

    def add_user_message_unless(self, condition: Condition, content: MessageContent, metadata=None):
        return self.add_message_unless(condition, MessageRole.user, content, metadata)

    def add_assistant_message_if(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.add_message_if(condition, MessageRole.assistant, content, metadata)

    def add_assistant_message_unless(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.add_message_unless(condition, MessageRole.assistant, content, metadata)

    def add_system_message_if(self, condition: Condition, content: MessageContent, metadata=None):
        return self.add_message_if(condition, MessageRole.system, content, metadata)

    def add_system_message_unless(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.add_message_unless(condition, MessageRole.system, content, metadata)

    def add_tool_call_message_if(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.add_message_if(condition, MessageRole.tool_call, content, metadata)

    def add_tool_call_message_unless(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.add_message_unless(condition, MessageRole.tool_call, content, metadata)

    def add_tool_result_message_if(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.add_message_if(condition, MessageRole.tool_result, content, metadata)

    def add_tool_result_message_unless(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.add_message_unless(condition, MessageRole.tool_result, content, metadata)

    def create_user_message_if(self, condition: Condition, content: MessageContent, metadata=None):
        return self.create_message_if(condition, MessageRole.user, content, metadata)

    def create_user_message_unless(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.create_message_unless(condition, MessageRole.user, content, metadata)

    def create_assistant_message_if(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.create_message_if(condition, MessageRole.assistant, content, metadata)

    def create_assistant_message_unless(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.create_message_unless(condition, MessageRole.assistant, content, metadata)

    def create_system_message_if(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.create_message_if(condition, MessageRole.system, content, metadata)

    def create_system_message_unless(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.create_message_unless(condition, MessageRole.system, content, metadata)

    def create_tool_call_message_if(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.create_message_if(condition, MessageRole.tool_call, content, metadata)

    def create_tool_call_message_unless(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.create_message_unless(condition, MessageRole.tool_call, content, metadata)

    def create_tool_result_message_if(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.create_message_if(condition, MessageRole.tool_result, content, metadata)

    def create_tool_result_message_unless(
        self, condition: Condition, content: MessageContent, metadata=None
    ):
        return self.create_message_unless(condition, MessageRole.tool_result, content, metadata)

    # =========================================================================
    # Reading messages
    # =========================================================================

    def messages(self, include_deleted: bool = False) -> list[MessageOut]:
        """All messages in creation order."""
        return self.lifecycle.list_for_conversation(self.id, include_deleted=include_deleted)

    def get_last_message(self) -> MessageOut | None:
        messages = self.tables.messages
        row = (
            self.db.execute(
                select(messages)
                .where(messages.c.conversation_id == self.id, messages.c.deleted_at.is_(None))
                .order_by(messages.c.created_at.desc(), messages.c.id.desc())
                .limit(1)
            )
            .mappings()
            .first()
        )
        return MessageOut.model_validate(dict(row)) if row else None

    def get_recent_messages(self, count: int) -> list[MessageOut]:
        """The last ``count`` live messages, oldest first."""
        if count <= 0:
            return []
        messages = self.tables.messages
        rows = self.db.execute(
            select(messages)
            .where(messages.c.conversation_id == self.id, messages.c.deleted_at.is_(None))
            .order_by(messages.c.created_at.desc(), messages.c.id.desc())
            .limit(count)
        ).mappings()
        recent = [MessageOut.model_validate(dict(row)) for row in rows]
        recent.reverse()
        return recent

    def select_recent_messages(self, count: int) -> ConversationWithMessages:
        """A snapshot of the conversation holding only its last ``count`` messages."""
        return ConversationWithMessages(
            **self.conversation.model_dump(),
            messages=self.get_recent_messages(count),
        )

    # =========================================================================
    # Conversation attributes
    # =========================================================================

    def refresh(self) -> "ConversationAggregate":
        self.conversation = _load(self.db, self.tables, id=self.id, include_deleted=True)
        return self

    def update(
        self,
        *,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> "ConversationAggregate":
        """Replace the given attributes; arguments left as None are unchanged."""
        values: dict[str, Any] = {}
        if title is not None:
            values["title"] = title
        if metadata is not None:
            values["metadata"] = metadata
        if context is not None:
            values["context"] = context
        if not values:
            return self

        conversations = self.tables.conversations
        values["updated_at"] = datetime.now(UTC)
        with transaction(self.db):
            self.db.execute(
                update(conversations).where(conversations.c.id == self.id).values(**values)
            )
        return self.refresh()

    # =========================================================================
    # Cascade
    # =========================================================================

    def _lock_for_cascade(self) -> datetime | None:
        """Lock the conversation row exclusively and return its tombstone.

        Message writers share-lock the same row, so the cascade sees every
        message committed before it and none can slip in until it commits.

        Raises:
            NotFoundError(E_CONVERSATION_NOT_FOUND): If the row is gone.
        """
        conversations = self.tables.conversations
        row = (
            self.db.execute(
                select(conversations.c.id, conversations.c.deleted_at)
                .where(conversations.c.id == self.id)
                .with_for_update()
            )
            .mappings()
            .first()
        )
        if row is None:
            raise conversation_not_found(self.id)
        return row["deleted_at"]

    def delete(self) -> "ConversationAggregate":
        """Soft-delete the conversation and its live messages atomically.

        Raises:
            InvalidStateError: If the conversation is already deleted.
        """
        conversations = self.tables.conversations
        messages = self.tables.messages
        now = datetime.now(UTC)

        with log_context(conversation_id=self.id), transaction(self.db):
            if self._lock_for_cascade() is not None:
                raise InvalidStateError(f"Conversation {self.id} is already deleted")
            self.db.execute(
                update(conversations)
                .where(conversations.c.id == self.id)
                .values(deleted_at=now, updated_at=now)
            )
            cascaded = self.db.execute(
                update(messages)
                .where(messages.c.conversation_id == self.id, messages.c.deleted_at.is_(None))
                .values(deleted_at=now, updated_at=now)
            )

        logger.info(
            "conversation_soft_deleted",
            conversation_id=self.id,
            messages_deleted=cascaded.rowcount,
        )
        return self.refresh()

    def restore(self) -> "ConversationAggregate":
        """Clear the conversation tombstone and those its delete cascaded.

        A no-op for a live conversation.
        """
        conversations = self.tables.conversations
        messages = self.tables.messages
        now = datetime.now(UTC)

        tombstone = (
            select(conversations.c.deleted_at)
            .where(conversations.c.id == self.id)
            .scalar_subquery()
        )

        with log_context(conversation_id=self.id), transaction(self.db):
            self._lock_for_cascade()
            restored = self.db.execute(
                update(messages)
                .where(
                    messages.c.conversation_id == self.id,
                    messages.c.deleted_at.is_not(None),
                    messages.c.deleted_at == tombstone,
                )
                .values(deleted_at=None, updated_at=now)
            )
            self.db.execute(
                update(conversations)
                .where(conversations.c.id == self.id, conversations.c.deleted_at.is_not(None))
                .values(deleted_at=None, updated_at=now)
            )

        logger.info(
            "conversation_restored",
            conversation_id=self.id,
            messages_restored=restored.rowcount,
        )
        return self.refresh()

    def force_delete(self) -> None:
        """Permanently remove the conversation and all of its messages."""
        conversations = self.tables.conversations
        messages = self.tables.messages

        with log_context(conversation_id=self.id), transaction(self.db):
            removed = self.db.execute(delete(messages).where(messages.c.conversation_id == self.id))
            self.db.execute(delete(conversations).where(conversations.c.id == self.id))

        logger.info(
            "conversation_force_deleted",
            conversation_id=self.id,
            messages_removed=removed.rowcount,
        )


# =============================================================================
# Service functions
# =============================================================================


def _load(
    db: Session,
    tables: Tables,
    *,
    id: int | None = None,
    uuid: UUID | None = None,
    include_deleted: bool = False,
) -> ConversationOut:
    conversations = tables.conversations
    query = select(conversations)
    if id is not None:
        query = query.where(conversations.c.id == id)
    if uuid is not None:
        query = query.where(conversations.c.uuid == uuid)
    if not include_deleted:
        query = query.where(conversations.c.deleted_at.is_(None))
    row = db.execute(query).mappings().first()
    if row is None:
        raise conversation_not_found(uuid if uuid is not None else id)
    return ConversationOut.model_validate(dict(row))


def create_conversation(
    db: Session,
    *,
    title: str | None = None,
    metadata: dict[str, Any] | None = None,
    context: dict[str, Any] | None = None,
    owner: OwnerRef | None = None,
    tables: Tables | None = None,
    sink: EventSink | None = None,
) -> ConversationAggregate:
    """Create a conversation, optionally owned, and publish ConversationCreated."""
    tables = tables or get_tables()
    sink = sink or get_event_sink()
    conversations = tables.conversations
    now = datetime.now(UTC)

    values = {
        "uuid": uuid4(),
        "owner_kind": owner.kind if owner else None,
        "owner_id": owner.id if owner else None,
        "title": title,
        "metadata": metadata or {},
        "context": context or {},
        "created_at": now,
        "updated_at": now,
        "deleted_at": None,
    }
    with transaction(db):
        result = db.execute(insert(conversations).values(**values))

    conversation = ConversationOut.model_validate({"id": result.inserted_primary_key[0], **values})
    logger.info(
        "conversation_created",
        conversation_id=conversation.id,
        owner=str(owner) if owner else None,
    )
    dispatch_event(sink, ConversationCreated.from_conversation(conversation))
    return ConversationAggregate(db, conversation, tables, sink)


def get_conversation(
    db: Session,
    conversation_uuid: UUID,
    *,
    include_deleted: bool = False,
    tables: Tables | None = None,
    sink: EventSink | None = None,
) -> ConversationAggregate:
    """Load a conversation by uuid.

    Raises:
        NotFoundError(E_CONVERSATION_NOT_FOUND): If missing, or tombstoned and
            include_deleted is False.
    """
    tables = tables or get_tables()
    conversation = _load(db, tables, uuid=conversation_uuid, include_deleted=include_deleted)
    return ConversationAggregate(db, conversation, tables, sink)


def get_conversation_by_id(
    db: Session,
    conversation_id: int,
    *,
    include_deleted: bool = False,
    tables: Tables | None = None,
    sink: EventSink | None = None,
) -> ConversationAggregate:
    tables = tables or get_tables()
    conversation = _load(db, tables, id=conversation_id, include_deleted=include_deleted)
    return ConversationAggregate(db, conversation, tables, sink)


def list_conversations(
    db: Session,
    *,
    owner: OwnerRef | None = None,
    include_deleted: bool = False,
    tables: Tables | None = None,
) -> list[ConversationOut]:
    """Conversations newest first, optionally restricted to one owner."""
    tables = tables or get_tables()
    conversations = tables.conversations
    query = select(conversations)
    if owner is not None:
        query = query.where(
            conversations.c.owner_kind == owner.kind,
            conversations.c.owner_id == owner.id,
        )
    if not include_deleted:
        query = query.where(conversations.c.deleted_at.is_(None))
    query = query.order_by(conversations.c.created_at.desc(), conversations.c.id.desc())
    return [ConversationOut.model_validate(dict(row)) for row in db.execute(query).mappings()]


def count_messages(db: Session, conversation_id: int, tables: Tables | None = None) -> int:
    tables = tables or get_tables()
    messages = tables.messages
    return db.scalar(
        select(func.count())
        .select_from(messages)
        .where(messages.c.conversation_id == conversation_id, messages.c.deleted_at.is_(None))
    )


def prune_conversations(
    db: Session,
    older_than_days: int,
    *,
    tables: Tables | None = None,
    sink: EventSink | None = None,
) -> int:
    """Force-delete conversations tombstoned more than ``older_than_days`` ago.

    Returns:
        Number of conversations removed.
    """
    if older_than_days < 1:
        raise InvalidInputError("older_than_days must be at least 1")

    tables = tables or get_tables()
    conversations = tables.conversations
    cutoff = datetime.now(UTC) - timedelta(days=older_than_days)

    rows = db.execute(
        select(conversations).where(
            conversations.c.deleted_at.is_not(None),
            conversations.c.deleted_at < cutoff,
        )
    ).mappings()
    expired = [ConversationOut.model_validate(dict(row)) for row in rows]

    for conversation in expired:
        ConversationAggregate(db, conversation, tables, sink).force_delete()

    logger.info("conversations_pruned", count=len(expired), older_than_days=older_than_days)
    return len(expired)
