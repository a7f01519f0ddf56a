"""Conversation API routes.

Routes are transport-only: each resolves its inputs and calls one service
operation. Conversations are addressed by uuid.

Response envelope: {"data": ...}
Error envelope: {"error": {"code": "...", "message": "...", "request_id": "..."}}
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from converse.api.deps import get_db, get_event_sink, get_owner_registry, get_tables
from converse.db.tables import Tables
from converse.errors import InvalidInputError
from converse.responses import success_response
from converse.schemas.conversation import (
    AddMessagesRequest,
    CreateConversationRequest,
    OwnerRef,
    StartStreamingRequest,
)
from converse.services import conversations as conversations_service
from converse.services.events import EventSink
from converse.services.owners import OwnerRegistry

router = APIRouter()


def _owner_ref(kind: str | None, id: str | None) -> OwnerRef | None:
    if kind is None and id is None:
        return None
    if not kind or not id:
        raise InvalidInputError("owner_kind and owner_id must be given together")
    return OwnerRef(kind=kind, id=id)


# =============================================================================
# Conversation Endpoints
# =============================================================================


@router.get("/conversations")
def list_conversations(
    db: Annotated[Session, Depends(get_db)],
    tables: Annotated[Tables, Depends(get_tables)],
    owner_kind: str | None = Query(default=None),
    owner_id: str | None = Query(default=None),
    include_deleted: bool = Query(default=False),
) -> dict:
    """List conversations newest first, optionally for one owner."""
    conversations = conversations_service.list_conversations(
        db,
        owner=_owner_ref(owner_kind, owner_id),
        include_deleted=include_deleted,
        tables=tables,
    )
    return success_response([c.model_dump(mode="json") for c in conversations])


@router.post("/conversations", status_code=201)
def create_conversation(
    body: CreateConversationRequest,
    db: Annotated[Session, Depends(get_db)],
    tables: Annotated[Tables, Depends(get_tables)],
    sink: Annotated[EventSink, Depends(get_event_sink)],
    registry: Annotated[OwnerRegistry, Depends(get_owner_registry)],
) -> dict:
    """Create a conversation, owned when owner_kind/owner_id are given.

    Errors:
        E_INVALID_INPUT (400): Only one half of the owner pair, or an
            unregistered owner kind.
    """
    owner = _owner_ref(body.owner_kind, body.owner_id)
    if owner is None:
        aggregate = conversations_service.create_conversation(
            db,
            title=body.title,
            metadata=body.metadata,
            context=body.context,
            tables=tables,
            sink=sink,
        )
    else:
        aggregate = registry.resolve(db, owner, tables, sink).start_conversation(
            title=body.title,
            metadata=body.metadata,
            context=body.context,
        )
    return success_response(aggregate.conversation.model_dump(mode="json"))


@router.get("/conversations/{conversation_id}")
def get_conversation(
    conversation_id: UUID,
    db: Annotated[Session, Depends(get_db)],
    tables: Annotated[Tables, Depends(get_tables)],
    include_deleted: bool = Query(default=False),
) -> dict:
    """Get a conversation by uuid.

    Errors:
        E_CONVERSATION_NOT_FOUND (404): Missing, or deleted and include_deleted is false.
    """
    aggregate = conversations_service.get_conversation(
        db, conversation_id, include_deleted=include_deleted, tables=tables
    )
    return success_response(aggregate.conversation.model_dump(mode="json"))


@router.delete("/conversations/{conversation_id}", status_code=204)
def delete_conversation(
    conversation_id: UUID,
    db: Annotated[Session, Depends(get_db)],
    tables: Annotated[Tables, Depends(get_tables)],
    sink: Annotated[EventSink, Depends(get_event_sink)],
    force: bool = Query(default=False, description="Permanently remove instead of tombstoning"),
) -> Response:
    """Delete a conversation and cascade to its messages.

    A soft delete addresses live conversations only; a force delete also
    removes already-deleted ones.

    Errors:
        E_CONVERSATION_NOT_FOUND (404): Conversation doesn't exist.
    """
    aggregate = conversations_service.get_conversation(
        db, conversation_id, include_deleted=force, tables=tables, sink=sink
    )
    if force:
        aggregate.force_delete()
    else:
        aggregate.delete()
    return Response(status_code=204)


@router.post("/conversations/{conversation_id}/restore")
def restore_conversation(
    conversation_id: UUID,
    db: Annotated[Session, Depends(get_db)],
    tables: Annotated[Tables, Depends(get_tables)],
    sink: Annotated[EventSink, Depends(get_event_sink)],
) -> dict:
    """Restore a deleted conversation and the messages its delete cascaded to."""
    aggregate = conversations_service.get_conversation(
        db, conversation_id, include_deleted=True, tables=tables, sink=sink
    )
    aggregate.restore()
    return success_response(aggregate.conversation.model_dump(mode="json"))


# =============================================================================
# Message Endpoints
# =============================================================================


@router.get("/conversations/{conversation_id}/messages")
def list_messages(
    conversation_id: UUID,
    db: Annotated[Session, Depends(get_db)],
    tables: Annotated[Tables, Depends(get_tables)],
    recent: int | None = Query(default=None, ge=1, description="Only the last N messages"),
) -> dict:
    """List a conversation's messages in creation order."""
    aggregate = conversations_service.get_conversation(db, conversation_id, tables=tables)
    if recent is None:
        messages = aggregate.messages()
    else:
        messages = aggregate.get_recent_messages(recent)
    return success_response([m.model_dump(mode="json") for m in messages])


@router.post("/conversations/{conversation_id}/messages", status_code=201)
def add_messages(
    conversation_id: UUID,
    body: AddMessagesRequest,
    db: Annotated[Session, Depends(get_db)],
    tables: Annotated[Tables, Depends(get_tables)],
    sink: Annotated[EventSink, Depends(get_event_sink)],
) -> dict:
    """Add a batch of messages; nothing is stored if any entry is invalid.

    Errors:
        E_INVALID_INPUT (400): An entry has an unknown shape, role or type.
    """
    aggregate = conversations_service.get_conversation(
        db, conversation_id, tables=tables, sink=sink
    )
    created = aggregate.add_messages(body.messages)
    return success_response([m.model_dump(mode="json") for m in created])


@router.post("/conversations/{conversation_id}/messages/stream", status_code=201)
def start_streaming(
    conversation_id: UUID,
    body: StartStreamingRequest,
    db: Annotated[Session, Depends(get_db)],
    tables: Annotated[Tables, Depends(get_tables)],
    sink: Annotated[EventSink, Depends(get_event_sink)],
) -> dict:
    """Open a pending message that chunks can be appended to."""
    aggregate = conversations_service.get_conversation(
        db, conversation_id, tables=tables, sink=sink
    )
    message = aggregate.start_streaming_message(body.role, body.metadata)
    return success_response(message.model_dump(mode="json"))
