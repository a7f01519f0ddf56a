"""Message API routes: reads and the streaming lifecycle.

Messages are addressed by uuid. Deleted messages are not visible.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from converse.api.deps import get_db, get_event_sink, get_tables
from converse.db.tables import Tables
from converse.responses import success_response
from converse.schemas.conversation import (
    AppendChunkRequest,
    CompleteStreamingRequest,
    FailStreamingRequest,
)
from converse.services.events import EventSink
from converse.services.lifecycle import MessageLifecycle

router = APIRouter()


def get_lifecycle(
    db: Annotated[Session, Depends(get_db)],
    tables: Annotated[Tables, Depends(get_tables)],
    sink: Annotated[EventSink, Depends(get_event_sink)],
) -> MessageLifecycle:
    return MessageLifecycle(db, tables, sink)


@router.get("/messages/{message_id}")
def get_message(
    message_id: UUID,
    lifecycle: Annotated[MessageLifecycle, Depends(get_lifecycle)],
) -> dict:
    """Get a message by uuid.

    Errors:
        E_MESSAGE_NOT_FOUND (404): Message doesn't exist or is deleted.
    """
    message = lifecycle.get_by_uuid(message_id)
    return success_response(message.model_dump(mode="json"))


@router.get("/messages/{message_id}/chunks")
def list_chunks(
    message_id: UUID,
    lifecycle: Annotated[MessageLifecycle, Depends(get_lifecycle)],
) -> dict:
    """List a message's chunks in sequence order."""
    message = lifecycle.get_by_uuid(message_id)
    chunks = lifecycle.chunks(message.id)
    return success_response([c.model_dump(mode="json") for c in chunks])


@router.post("/messages/{message_id}/chunks", status_code=201)
def append_chunk(
    message_id: UUID,
    body: AppendChunkRequest,
    lifecycle: Annotated[MessageLifecycle, Depends(get_lifecycle)],
) -> dict:
    """Append a chunk to a pending message.

    Errors:
        E_MESSAGE_NOT_FOUND (404): Message doesn't exist or is deleted.
        E_INVALID_STATE (409): Message is already complete or failed.
        E_CONSTRAINT_VIOLATION (409): A concurrent append took the sequence.
    """
    message = lifecycle.get_by_uuid(message_id)
    chunk = lifecycle.append_chunk(message.id, body.content, body.metadata)
    return success_response(chunk.model_dump(mode="json"))


@router.post("/messages/{message_id}/complete")
def complete_streaming(
    message_id: UUID,
    body: CompleteStreamingRequest,
    lifecycle: Annotated[MessageLifecycle, Depends(get_lifecycle)],
) -> dict:
    """Finalize a streaming message as success."""
    message = lifecycle.get_by_uuid(message_id)
    completed = lifecycle.complete_streaming(message.id, body.metadata)
    return success_response(completed.model_dump(mode="json"))


@router.post("/messages/{message_id}/fail")
def fail_streaming(
    message_id: UUID,
    body: FailStreamingRequest,
    lifecycle: Annotated[MessageLifecycle, Depends(get_lifecycle)],
) -> dict:
    """Finalize a streaming message as error. Also cancels a stream."""
    message = lifecycle.get_by_uuid(message_id)
    failed = lifecycle.fail_streaming(message.id, body.error, body.metadata)
    return success_response(failed.model_dump(mode="json"))
