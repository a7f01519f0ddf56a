"""Tests for chunk sequence assignment and content reconstruction.

Sequence numbers start at 0 per message and follow arrival order. The
(message_id, sequence) unique constraint rejects duplicates, which callers
see as ConstraintViolationError.
"""

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from converse.db.session import transaction
from converse.db.tables import MessageStatus, Tables
from converse.errors import ConstraintViolationError
from converse.services.conversations import ConversationAggregate
from converse.services.sequencer import ChunkSequencer
from tests.factories import create_test_chunk, create_test_message


class TestNextSequence:
    """Tests for next_sequence()."""

    def test_first_sequence_is_zero(
        self, db_session: Session, tables: Tables, conversation: ConversationAggregate
    ):
        """A message without chunks starts at sequence 0."""
        message_id = create_test_message(
            db_session, tables, conversation.id, content="", status=MessageStatus.pending
        )

        assert ChunkSequencer(db_session, tables).next_sequence(message_id) == 0

    def test_next_is_max_plus_one(
        self, db_session: Session, tables: Tables, conversation: ConversationAggregate
    ):
        """The next sequence is one past the highest existing one."""
        message_id = create_test_message(
            db_session, tables, conversation.id, content="", status=MessageStatus.pending
        )
        create_test_chunk(db_session, tables, message_id, 0)
        create_test_chunk(db_session, tables, message_id, 1)

        assert ChunkSequencer(db_session, tables).next_sequence(message_id) == 2

    def test_sequences_are_per_message(
        self, db_session: Session, tables: Tables, conversation: ConversationAggregate
    ):
        """Chunks of one message don't advance another message's sequence."""
        first = create_test_message(
            db_session, tables, conversation.id, content="", status=MessageStatus.pending
        )
        second = create_test_message(
            db_session, tables, conversation.id, content="", status=MessageStatus.pending
        )
        create_test_chunk(db_session, tables, first, 0)
        create_test_chunk(db_session, tables, first, 1)

        assert ChunkSequencer(db_session, tables).next_sequence(second) == 0


class TestAppend:
    """Tests for append() inside a caller's transaction."""

    def test_append_assigns_consecutive_sequences(
        self, db_session: Session, tables: Tables, conversation: ConversationAggregate
    ):
        message_id = create_test_message(
            db_session, tables, conversation.id, content="", status=MessageStatus.pending
        )
        sequencer = ChunkSequencer(db_session, tables)

        with transaction(db_session):
            chunks = [sequencer.append(message_id, text) for text in ("a", "b", "c")]

        assert [chunk.sequence for chunk in chunks] == [0, 1, 2]
        assert [chunk.content for chunk in sequencer.list_chunks(message_id)] == ["a", "b", "c"]

    def test_append_keeps_metadata(
        self, db_session: Session, tables: Tables, conversation: ConversationAggregate
    ):
        message_id = create_test_message(
            db_session, tables, conversation.id, content="", status=MessageStatus.pending
        )
        sequencer = ChunkSequencer(db_session, tables)

        with transaction(db_session):
            chunk = sequencer.append(message_id, "x", {"token_count": 1})

        assert chunk.metadata == {"token_count": 1}
        assert sequencer.list_chunks(message_id)[0].metadata == {"token_count": 1}

    def test_duplicate_sequence_raises_constraint_violation(
        self,
        db_session: Session,
        tables: Tables,
        conversation: ConversationAggregate,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """A sequence already taken by another writer is rejected, not overwritten."""
        message_id = create_test_message(
            db_session, tables, conversation.id, content="", status=MessageStatus.pending
        )
        create_test_chunk(db_session, tables, message_id, 0, content="first")
        sequencer = ChunkSequencer(db_session, tables)

        # Simulate a racing writer that computed the same sequence
        monkeypatch.setattr(sequencer, "next_sequence", lambda _message_id: 0)

        with pytest.raises(ConstraintViolationError):
            with transaction(db_session):
                sequencer.append(message_id, "second")

        chunks = tables.message_chunks
        contents = db_session.scalars(
            select(chunks.c.content).where(chunks.c.message_id == message_id)
        ).all()
        assert contents == ["first"]


class TestReconstruction:
    """Tests for list_chunks(), count() and reconstruct_content()."""

    def test_reconstruct_orders_by_sequence(
        self, db_session: Session, tables: Tables, conversation: ConversationAggregate
    ):
        """Content is rebuilt by ascending sequence, whatever the insert order."""
        message_id = create_test_message(
            db_session, tables, conversation.id, content="", status=MessageStatus.pending
        )
        create_test_chunk(db_session, tables, message_id, 2, content="c")
        create_test_chunk(db_session, tables, message_id, 0, content="a")
        create_test_chunk(db_session, tables, message_id, 1, content="b")

        sequencer = ChunkSequencer(db_session, tables)

        assert sequencer.reconstruct_content(message_id) == "abc"
        assert [c.sequence for c in sequencer.list_chunks(message_id)] == [0, 1, 2]

    def test_reconstruct_without_chunks_is_empty(
        self, db_session: Session, tables: Tables, conversation: ConversationAggregate
    ):
        message_id = create_test_message(
            db_session, tables, conversation.id, content="", status=MessageStatus.pending
        )
        sequencer = ChunkSequencer(db_session, tables)

        assert sequencer.reconstruct_content(message_id) == ""
        assert sequencer.count(message_id) == 0

    def test_count(self, db_session: Session, tables: Tables, conversation: ConversationAggregate):
        message_id = create_test_message(
            db_session, tables, conversation.id, content="", status=MessageStatus.pending
        )
        for sequence in range(4):
            create_test_chunk(db_session, tables, message_id, sequence)

        assert ChunkSequencer(db_session, tables).count(message_id) == 4


class TestLockMessage:
    """Tests for lock_message()."""

    def test_returns_row(
        self, db_session: Session, tables: Tables, conversation: ConversationAggregate
    ):
        message_id = create_test_message(db_session, tables, conversation.id)

        with transaction(db_session):
            row = ChunkSequencer(db_session, tables).lock_message(message_id)

        assert row is not None
        assert row["id"] == message_id

    def test_missing_message_returns_none(self, db_session: Session, tables: Tables):
        with transaction(db_session):
            row = ChunkSequencer(db_session, tables).lock_message(999_999)

        assert row is None
