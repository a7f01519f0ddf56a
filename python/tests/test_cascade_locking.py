"""Tests for message writes racing a conversation cascade.

These tests need PostgreSQL: SQLite has no row locks.

- A message insert waits for an in-flight cascade delete, then is rejected
- A cascade delete waits for an in-flight insert, then tombstones its message
- A message restore waits for an in-flight cascade delete, then is rejected
- No live message ever remains inside a deleted conversation
"""

import threading
import time
from datetime import UTC, datetime

from sqlalchemy import select, update

from converse.db.tables import MessageRole, Tables
from converse.errors import InvalidStateError, NotFoundError
from converse.services.conversations import create_conversation, get_conversation_by_id
from converse.services.lifecycle import MessageLifecycle
from tests.helpers import RecordingEventSink
from tests.utils.db import requires_postgres

pytestmark = requires_postgres


def open_conversation(direct_db, tables: Tables) -> int:
    """Commit a live conversation; returns its id."""
    with direct_db.session() as s:
        aggregate = create_conversation(s, tables=tables, sink=RecordingEventSink())
        direct_db.register_cleanup(tables.conversations, aggregate.id)
    return aggregate.id


def live_message_ids(direct_db, tables: Tables, conversation_id: int) -> list[int]:
    messages = tables.messages
    with direct_db.session() as s:
        return list(
            s.scalars(
                select(messages.c.id).where(
                    messages.c.conversation_id == conversation_id,
                    messages.c.deleted_at.is_(None),
                )
            )
        )


def conversation_tombstone(direct_db, tables: Tables, conversation_id: int) -> datetime | None:
    conversations = tables.conversations
    with direct_db.session() as s:
        return s.scalar(
            select(conversations.c.deleted_at).where(conversations.c.id == conversation_id)
        )


def hold_cascade_delete(direct_db, tables: Tables, conversation_id: int, locked, release):
    """Run the cascade by hand so it can be held open between lock and commit."""
    conversations = tables.conversations
    messages = tables.messages
    with direct_db.session() as s:
        s.execute(
            select(conversations.c.id)
            .where(conversations.c.id == conversation_id)
            .with_for_update()
        )
        now = datetime.now(UTC)
        s.execute(
            update(conversations)
            .where(conversations.c.id == conversation_id)
            .values(deleted_at=now, updated_at=now)
        )
        locked.set()
        release.wait(timeout=5)
        s.execute(
            update(messages)
            .where(messages.c.conversation_id == conversation_id, messages.c.deleted_at.is_(None))
            .values(deleted_at=now, updated_at=now)
        )
        s.commit()


class TestWritesDuringCascade:
    """Concurrency tests using independent database connections."""

    def test_insert_waits_for_delete_and_is_rejected(self, direct_db, tables: Tables):
        conversation_id = open_conversation(direct_db, tables)

        events: list[str] = []
        results: dict[str, object] = {}
        locked = threading.Event()
        release = threading.Event()

        def deleter():
            hold_cascade_delete(direct_db, tables, conversation_id, locked, release)

        def writer():
            locked.wait(timeout=5)
            try:
                with direct_db.session() as s:
                    lifecycle = MessageLifecycle(s, tables, RecordingEventSink())
                    results["message"] = lifecycle.create(
                        conversation_id, MessageRole.user, "hello"
                    )
            except Exception as e:
                results["error"] = e
            events.append("writer_done")

        thread_a = threading.Thread(target=deleter, daemon=True)
        thread_b = threading.Thread(target=writer, daemon=True)
        thread_a.start()
        thread_b.start()

        locked.wait(timeout=5)
        time.sleep(0.2)
        assert "writer_done" not in events
        release.set()

        thread_a.join(timeout=5)
        thread_b.join(timeout=5)

        assert isinstance(results.get("error"), NotFoundError)
        assert conversation_tombstone(direct_db, tables, conversation_id) is not None
        assert live_message_ids(direct_db, tables, conversation_id) == []

    def test_delete_waits_for_insert_and_tombstones_it(self, direct_db, tables: Tables):
        conversation_id = open_conversation(direct_db, tables)

        events: list[str] = []
        inserted = threading.Event()
        release = threading.Event()

        def writer():
            with direct_db.session() as s:
                lifecycle = MessageLifecycle(s, tables, RecordingEventSink())
                lifecycle.insert(conversation_id, MessageRole.user, "in flight")
                inserted.set()
                release.wait(timeout=5)
                events.append("insert_committing")
                s.commit()

        def deleter():
            inserted.wait(timeout=5)
            with direct_db.session() as s:
                get_conversation_by_id(
                    s, conversation_id, tables=tables, sink=RecordingEventSink()
                ).delete()
            events.append("delete_done")

        thread_a = threading.Thread(target=writer, daemon=True)
        thread_b = threading.Thread(target=deleter, daemon=True)
        thread_a.start()
        thread_b.start()

        inserted.wait(timeout=5)
        time.sleep(0.2)
        assert "delete_done" not in events
        release.set()

        thread_a.join(timeout=5)
        thread_b.join(timeout=5)

        assert events == ["insert_committing", "delete_done"]
        assert conversation_tombstone(direct_db, tables, conversation_id) is not None
        assert live_message_ids(direct_db, tables, conversation_id) == []

    def test_message_restore_waits_for_delete_and_is_rejected(self, direct_db, tables: Tables):
        conversation_id = open_conversation(direct_db, tables)
        with direct_db.session() as s:
            lifecycle = MessageLifecycle(s, tables, RecordingEventSink())
            message = lifecycle.create(conversation_id, MessageRole.user, "removed")
            lifecycle.delete(message.id)

        results: dict[str, object] = {}
        locked = threading.Event()
        release = threading.Event()

        def deleter():
            hold_cascade_delete(direct_db, tables, conversation_id, locked, release)

        def restorer():
            locked.wait(timeout=5)
            try:
                with direct_db.session() as s:
                    MessageLifecycle(s, tables, RecordingEventSink()).restore(message.id)
            except Exception as e:
                results["error"] = e

        thread_a = threading.Thread(target=deleter, daemon=True)
        thread_b = threading.Thread(target=restorer, daemon=True)
        thread_a.start()
        thread_b.start()

        locked.wait(timeout=5)
        time.sleep(0.2)
        release.set()

        thread_a.join(timeout=5)
        thread_b.join(timeout=5)

        assert isinstance(results.get("error"), InvalidStateError)
        assert live_message_ids(direct_db, tables, conversation_id) == []

    def test_parallel_inserts_and_delete_leave_no_live_message(self, direct_db, tables: Tables):
        """Whatever the interleaving, a deleted conversation holds no live message."""
        conversation_id = open_conversation(direct_db, tables)
        writers = 4
        barrier = threading.Barrier(writers + 1)
        errors: list[Exception] = []

        def writer(index: int):
            barrier.wait(timeout=5)
            try:
                with direct_db.session() as s:
                    MessageLifecycle(s, tables, RecordingEventSink()).create(
                        conversation_id, MessageRole.user, f"message {index}"
                    )
            except NotFoundError:
                pass
            except Exception as e:
                errors.append(e)

        def deleter():
            barrier.wait(timeout=5)
            with direct_db.session() as s:
                get_conversation_by_id(
                    s, conversation_id, tables=tables, sink=RecordingEventSink()
                ).delete()

        threads = [threading.Thread(target=writer, args=(i,), daemon=True) for i in range(writers)]
        threads.append(threading.Thread(target=deleter, daemon=True))
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert not errors, f"Unexpected failures: {errors}"
        assert conversation_tombstone(direct_db, tables, conversation_id) is not None
        assert live_message_ids(direct_db, tables, conversation_id) == []
