"""Chunk sequence assignment and content reconstruction.

Sequence numbers for a message's chunks start at 0 and increase by one per
appended chunk, in arrival order. Arrivals are never reordered: the chunk log
is append-only.

Per-message serialization:
- The caller locks the message row (FOR UPDATE) before asking for the next
  sequence, so concurrent appenders queue on the row lock
- The (message_id, sequence) unique constraint is the backstop; a collision
  surfaces as ConstraintViolationError and the whole transaction rolls back
- Must be called within an existing transaction context; nothing here
  commits
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, insert, select
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from converse.db.tables import Tables, get_tables
from converse.errors import ConstraintViolationError
from converse.logging import get_logger
from converse.schemas.conversation import ChunkOut

logger = get_logger(__name__)


class ChunkSequencer:
    """Assigns per-message chunk sequences and rebuilds content from chunks."""

    def __init__(self, db: Session, tables: Tables | None = None):
        self.db = db
        self.tables = tables or get_tables()

    def lock_message(self, message_id: int) -> RowMapping | None:
        """Lock a message row for the rest of the transaction.

        Returns the locked row, or None if the message does not exist.
        On SQLite FOR UPDATE is not emitted; the database-level write lock
        serializes writers instead.
        """
        messages = self.tables.messages
        return (
            self.db.execute(select(messages).where(messages.c.id == message_id).with_for_update())
            .mappings()
            .first()
        )

    def next_sequence(self, message_id: int) -> int:
        """Return max(sequence) + 1 for the message, or 0 if it has no chunks."""
        chunks = self.tables.message_chunks
        current = self.db.scalar(
            select(func.max(chunks.c.sequence)).where(chunks.c.message_id == message_id)
        )
        return 0 if current is None else current + 1

    def append(
        self,
        message_id: int,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChunkOut:
        """Insert a chunk at the next sequence number.

        Raises:
            ConstraintViolationError: If another writer already took the sequence.
        """
        chunks = self.tables.message_chunks
        sequence = self.next_sequence(message_id)
        values = {
            "message_id": message_id,
            "content": content,
            "sequence": sequence,
            "metadata": metadata or {},
            "created_at": datetime.now(UTC),
        }

        try:
            result = self.db.execute(insert(chunks).values(**values))
        except IntegrityError as e:
            logger.warning(
                "chunk_sequence_conflict",
                message_id=message_id,
                sequence=sequence,
            )
            raise ConstraintViolationError(
                f"Chunk sequence {sequence} already exists for message {message_id}"
            ) from e

        logger.debug("assigned_chunk_sequence", message_id=message_id, sequence=sequence)

        return ChunkOut(id=result.inserted_primary_key[0], **values)

    def list_chunks(self, message_id: int) -> list[ChunkOut]:
        """All chunks of a message in ascending sequence order."""
        chunks = self.tables.message_chunks
        rows = self.db.execute(
            select(chunks).where(chunks.c.message_id == message_id).order_by(chunks.c.sequence)
        ).mappings()
        return [ChunkOut.model_validate(dict(row)) for row in rows]

    def count(self, message_id: int) -> int:
        chunks = self.tables.message_chunks
        result = self.db.scalar(
            select(func.count()).select_from(chunks).where(chunks.c.message_id == message_id)
        )
        return result or 0

    def reconstruct_content(self, message_id: int) -> str:
        """Concatenate chunk contents by ascending sequence.

        For any message opened for streaming this equals the message's
        stored content after every append.
        """
        return "".join(chunk.content for chunk in self.list_chunks(message_id))
