"""Attachment metadata records.

Only the metadata row is managed here; the bytes live on whatever disk the
host application writes to. Paths are built in one place so the configured
prefix is applied exactly once.

Path layout:
    {CONVERSE_PATH}/{conversation_uuid}/{file_name}

Rules:
    - No leading slash
    - The file name is a single path segment
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from converse.config import get_settings
from converse.db.session import transaction
from converse.db.tables import Tables, get_tables
from converse.errors import ErrorCode, InvalidInputError, NotFoundError
from converse.logging import get_logger
from converse.schemas.conversation import AttachmentOut

logger = get_logger(__name__)


def build_attachment_path(
    conversation_uuid: UUID | str,
    file_name: str,
    prefix: str | None = None,
) -> str:
    """Build the storage path for an attachment.

    Args:
        conversation_uuid: Conversation the attachment's message belongs to.
        file_name: Name of the stored file.
        prefix: Path prefix; defaults to the configured attachments path.

    Raises:
        InvalidInputError: If the file name is empty or contains a separator.

    Example:
        >>> build_attachment_path(uuid, "diagram.png", prefix="conversations")
        'conversations/5b0c.../diagram.png'
    """
    if not file_name or "/" in file_name or "\\" in file_name or file_name in {".", ".."}:
        raise InvalidInputError(f"Invalid attachment file name: {file_name!r}")

    if prefix is None:
        prefix = get_settings().attachments_path
    prefix = prefix.strip("/")
    if prefix:
        return f"{prefix}/{conversation_uuid}/{file_name}"
    return f"{conversation_uuid}/{file_name}"


def add_attachment(
    db: Session,
    message_id: int,
    *,
    type: str,
    path: str,
    mime_type: str | None = None,
    size: int | None = None,
    metadata: dict[str, Any] | None = None,
    tables: Tables | None = None,
) -> AttachmentOut:
    """Record an attachment for a live message.

    Raises:
        NotFoundError(E_MESSAGE_NOT_FOUND): If the message is missing or tombstoned.
        InvalidInputError: If size is negative.
    """
    if size is not None and size < 0:
        raise InvalidInputError("Attachment size must not be negative")

    tables = tables or get_tables()
    messages = tables.messages
    attachments = tables.message_attachments

    with transaction(db):
        found = db.scalar(
            select(messages.c.id).where(
                messages.c.id == message_id, messages.c.deleted_at.is_(None)
            )
        )
        if found is None:
            raise NotFoundError(ErrorCode.E_MESSAGE_NOT_FOUND, f"Message {message_id} not found")

        now = datetime.now(UTC)
        values = {
            "message_id": message_id,
            "type": type,
            "path": path.lstrip("/"),
            "mime_type": mime_type,
            "size": size,
            "metadata": metadata or {},
            "created_at": now,
            "updated_at": now,
        }
        result = db.execute(insert(attachments).values(**values))

    logger.info("attachment_added", message_id=message_id, type=type, path=values["path"])
    return AttachmentOut.model_validate({"id": result.inserted_primary_key[0], **values})


def list_attachments(
    db: Session,
    message_id: int,
    *,
    type: str | None = None,
    tables: Tables | None = None,
) -> list[AttachmentOut]:
    tables = tables or get_tables()
    attachments = tables.message_attachments
    query = select(attachments).where(attachments.c.message_id == message_id)
    if type is not None:
        query = query.where(attachments.c.type == type)
    query = query.order_by(attachments.c.id)
    return [AttachmentOut.model_validate(dict(row)) for row in db.execute(query).mappings()]
