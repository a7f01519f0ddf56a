"""Test helpers for event capture and common assertions.

Provides:
- RecordingEventSink: keeps every published event in memory
- FailingEventSink: raises on every publish
- Invariant checks shared by lifecycle and API tests
"""

from sqlalchemy.orm import Session

from converse.db.tables import MessageStatus, Tables
from converse.schemas.conversation import MessageOut
from converse.schemas.events import LifecycleEvent
from converse.services.sequencer import ChunkSequencer


class RecordingEventSink:
    """EventSink that records events in publish order."""

    def __init__(self) -> None:
        self.events: list[LifecycleEvent] = []

    def publish(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.events]

    def of_type(self, event_type: type[LifecycleEvent]) -> list[LifecycleEvent]:
        return [event for event in self.events if isinstance(event, event_type)]

    def clear(self) -> None:
        self.events.clear()


class FailingEventSink:
    """EventSink whose transport is down."""

    def __init__(self) -> None:
        self.attempts = 0

    def publish(self, event: LifecycleEvent) -> None:
        self.attempts += 1
        raise ConnectionError("broadcast transport unavailable")


def assert_terminal_consistency(message: MessageOut) -> None:
    """is_complete tracks terminal status, completed_at tracks is_complete."""
    assert message.is_complete == (message.status != MessageStatus.pending)
    assert (message.completed_at is not None) == message.is_complete


def assert_content_matches_chunks(db: Session, tables: Tables, message: MessageOut) -> None:
    """Stored content equals the chunks concatenated by sequence, with no gaps."""
    sequencer = ChunkSequencer(db, tables)
    chunks = sequencer.list_chunks(message.id)
    assert [chunk.sequence for chunk in chunks] == list(range(len(chunks)))
    assert sequencer.reconstruct_content(message.id) == (message.content or "")
