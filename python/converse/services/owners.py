"""Owner integration.

A conversation may belong to an owner, referenced by an explicit
``OwnerRef(kind, id)`` pair. The registry maps each owner kind to a factory
that builds the Conversable capability for one owner. Kinds are registered
at startup; resolving an unregistered kind is an input error.

Usage:
    registry = OwnerRegistry()
    registry.register("user")

    owner = registry.resolve(db, OwnerRef(kind="user", id="42"))
    conversation = owner.start_conversation(title="Support")
"""

from collections.abc import Callable
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from converse.db.tables import Tables
from converse.errors import InvalidInputError, NotFoundError
from converse.logging import get_logger
from converse.schemas.conversation import ConversationOut, OwnerRef
from converse.services.conversations import (
    ConversationAggregate,
    conversation_not_found,
    create_conversation,
    get_conversation,
    list_conversations,
)
from converse.services.events import EventSink

logger = get_logger(__name__)


class Conversable(Protocol):
    """What an owner can do with its conversations."""

    owner: OwnerRef

    def list_conversations(self, include_deleted: bool = False) -> list[ConversationOut]: ...

    def start_conversation(
        self,
        *,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> ConversationAggregate: ...

    def find_conversation(self, conversation_uuid: UUID) -> ConversationAggregate | None: ...

    def continue_conversation(self, conversation_uuid: UUID) -> ConversationAggregate: ...


class OwnerConversations:
    """Default Conversable: conversations stored against the owner pair."""

    def __init__(
        self,
        db: Session,
        owner: OwnerRef,
        tables: Tables | None = None,
        sink: EventSink | None = None,
    ):
        self.db = db
        self.owner = owner
        self.tables = tables
        self.sink = sink

    def list_conversations(self, include_deleted: bool = False) -> list[ConversationOut]:
        return list_conversations(
            self.db, owner=self.owner, include_deleted=include_deleted, tables=self.tables
        )

    def active_conversations(self) -> list[ConversationOut]:
        return self.list_conversations(include_deleted=False)

    def start_conversation(
        self,
        *,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> ConversationAggregate:
        return create_conversation(
            self.db,
            title=title,
            metadata=metadata,
            context=context,
            owner=self.owner,
            tables=self.tables,
            sink=self.sink,
        )

    def find_conversation(self, conversation_uuid: UUID) -> ConversationAggregate | None:
        """The owner's live conversation with this uuid, or None.

        Conversations of other owners are not visible.
        """
        try:
            return self.continue_conversation(conversation_uuid)
        except NotFoundError:
            return None

    def continue_conversation(self, conversation_uuid: UUID) -> ConversationAggregate:
        """Like find_conversation, but a miss raises NotFoundError."""
        aggregate = get_conversation(
            self.db, conversation_uuid, tables=self.tables, sink=self.sink
        )
        if aggregate.conversation.owner != self.owner:
            logger.info(
                "conversation_owner_mismatch",
                conversation_id=aggregate.id,
                owner=str(self.owner),
            )
            raise conversation_not_found(conversation_uuid)
        return aggregate


ConversableFactory = Callable[..., Conversable]


class OwnerRegistry:
    """Maps owner kinds to Conversable factories."""

    def __init__(self) -> None:
        self._factories: dict[str, ConversableFactory] = {}

    def register(self, kind: str, factory: ConversableFactory = OwnerConversations) -> None:
        if not kind:
            raise InvalidInputError("Owner kind must not be empty")
        self._factories[kind] = factory
        logger.debug("owner_kind_registered", kind=kind)

    def kinds(self) -> list[str]:
        return sorted(self._factories)

    def is_registered(self, kind: str) -> bool:
        return kind in self._factories

    def resolve(
        self,
        db: Session,
        owner: OwnerRef,
        tables: Tables | None = None,
        sink: EventSink | None = None,
    ) -> Conversable:
        """Build the capability for one owner.

        Raises:
            InvalidInputError: If the owner kind is not registered.
        """
        factory = self._factories.get(owner.kind)
        if factory is None:
            raise InvalidInputError(f"Unknown owner kind: {owner.kind}")
        return factory(db, owner, tables, sink)
