"""Batch ingestion of heterogeneous message entries.

A batch may mix these shapes:
- plain text, stored as a user message
- a mapping with ``role`` and ``content`` (``role`` may be a MessageRole or its tag)
- a mapping with ``type`` and ``content``, where ``type`` is a role tag
- any object exposing ``to_record()``, such as the typed message DTOs

When a mapping has both ``role`` and ``type``, ``role`` wins.

Every entry is normalized into a closed variant before anything is written,
so a bad entry anywhere in the batch rejects the whole batch. The accepted
entries are then inserted in one transaction, in input order, and
MessageCreated is published for each after commit.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import TypeAdapter, ValidationError

from converse.db.session import transaction
from converse.db.tables import MessageRole
from converse.errors import InvalidInputError
from converse.logging import get_logger, log_context
from converse.schemas.conversation import MessageOut
from converse.schemas.ingestion import (
    MessageEntry,
    RecordEntry,
    RoleEntry,
    TextEntry,
    TypedEntry,
)
from converse.services.lifecycle import MessageLifecycle

logger = get_logger(__name__)

TYPE_TO_ROLE: dict[str, MessageRole] = {role.value: role for role in MessageRole}

_entry_adapter: TypeAdapter[MessageEntry] = TypeAdapter(MessageEntry)


def normalize_entry(raw: Any) -> MessageEntry:
    """Classify one raw batch entry into a MessageEntry variant.

    Raises:
        InvalidInputError: If the shape is not recognized, a field has the
            wrong type, or a ``type`` tag names no role.
    """
    if isinstance(raw, str):
        return TextEntry(content=raw)

    to_record = getattr(raw, "to_record", None)
    if callable(to_record):
        record = to_record()
        if not isinstance(record, Mapping):
            raise InvalidInputError(
                f"{type(raw).__name__}.to_record() returned {type(record).__name__}, expected a mapping"
            )
        return _validate({**record, "kind": "record"})

    if isinstance(raw, Mapping):
        if "role" in raw:
            return _validate({**raw, "kind": "role"})
        if "type" in raw:
            entry = _validate({**raw, "kind": "type"})
            if entry.type not in TYPE_TO_ROLE:
                raise InvalidInputError(f"Unknown message type: {entry.type}")
            return entry
        raise InvalidInputError("Message entry needs a 'role' or a 'type' together with 'content'")

    raise InvalidInputError(f"Unknown message entry type: {type(raw).__name__}")


def resolve_entry(entry: MessageEntry) -> tuple[MessageRole, str, dict[str, Any]]:
    """Map a normalized entry to (role, content, metadata)."""
    if isinstance(entry, TextEntry):
        return MessageRole.user, entry.content, {}
    if isinstance(entry, TypedEntry):
        return TYPE_TO_ROLE[entry.type], entry.content, dict(entry.metadata)
    if isinstance(entry, (RoleEntry, RecordEntry)):
        return entry.role, entry.content, dict(entry.metadata)
    raise InvalidInputError(f"Unknown message entry type: {type(entry).__name__}")


def _validate(data: dict[str, Any]) -> MessageEntry:
    data = {key: value for key, value in data.items() if key in {"kind", "role", "type", "content", "metadata"}}
    if data.get("metadata") is None:
        data.pop("metadata", None)
    try:
        return _entry_adapter.validate_python(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'][1:]) or 'entry'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidInputError(f"Invalid message entry: {details}") from e


class IngestionDispatcher:
    """Turns a batch of heterogeneous entries into stored messages."""

    def __init__(self, lifecycle: MessageLifecycle):
        self.lifecycle = lifecycle

    def ingest(self, conversation_id: int, entries: Iterable[Any]) -> list[MessageOut]:
        """Normalize, then insert every entry atomically.

        Returns:
            The created messages in input order.

        Raises:
            InvalidInputError: If any entry is malformed; nothing is written.
            NotFoundError: If the conversation is missing or tombstoned.
        """
        resolved = [resolve_entry(normalize_entry(raw)) for raw in entries]

        with log_context(conversation_id=conversation_id), transaction(self.lifecycle.db):
            created = [
                self.lifecycle.insert(conversation_id, role, content, metadata)
                for role, content, metadata in resolved
            ]

        logger.info(
            "messages_ingested",
            conversation_id=conversation_id,
            count=len(created),
        )
        for message in created:
            self.lifecycle.announce_created(message)
        return created
