"""Test utilities for database isolation.

Two backends are supported:
- SQLite (default): every test gets its own in-memory database, so plain
  sessions are isolated without any rollback tricks
- PostgreSQL: tests share one schema and run inside a savepoint that is
  rolled back after each test
"""

import os
from typing import Any

import pytest
from sqlalchemy import Connection, Engine, delete
from sqlalchemy.orm import Session

from converse.db.tables import Tables


def is_postgres_url(url: str) -> bool:
    return url.startswith("postgresql")


requires_postgres = pytest.mark.skipif(
    not is_postgres_url(os.environ.get("DATABASE_URL", "")),
    reason="needs a PostgreSQL DATABASE_URL for real row locks",
)


class DirectSessionManager:
    """Manager for tests that need direct DB access without savepoint isolation.

    Use this when a test requires multiple independent connections that must
    see each other's committed data (e.g., testing row locks).

    WARNING: Tests using this do NOT auto-rollback. They must register
    cleanup data.

    Usage:
        def test_something(self, direct_db: DirectSessionManager, tables):
            direct_db.register_cleanup(tables.conversations, conversation_id)

            with direct_db.session() as s:
                ...
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._cleanup_items: list[tuple[Any, Any]] = []

    def session(self) -> Session:
        """Create a new independent session. Caller commits and closes."""
        return Session(self.engine, expire_on_commit=False)

    def register_cleanup(self, table: Any, value: Any) -> None:
        """Register a row (by id) to delete after the test.

        Items are deleted in reverse order of registration. Rows owned
        through ON DELETE CASCADE do not need their own entry.
        """
        self._cleanup_items.append((table, value))

    def cleanup(self) -> None:
        """Delete all registered test data in reverse order."""
        if not self._cleanup_items:
            return

        with Session(self.engine) as session:
            for table, value in reversed(self._cleanup_items):
                session.execute(delete(table).where(table.c.id == value))
            session.commit()
        self._cleanup_items.clear()


class TestDatabaseManager:
    """Session inside an outer transaction that is rolled back on exit.

    Service code commits freely; with ``create_savepoint`` those commits only
    release savepoints and the outer rollback discards everything.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._connection: Connection | None = None
        self._session: Session | None = None

    def __enter__(self) -> Session:
        self._connection = self.engine.connect()
        self._connection.begin()

        self._session = Session(
            bind=self._connection,
            join_transaction_mode="create_savepoint",
            expire_on_commit=False,
        )
        return self._session

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._session:
            self._session.close()
        if self._connection:
            self._connection.rollback()
            self._connection.close()


def create_schema(engine: Engine, tables: Tables) -> None:
    tables.metadata.create_all(engine, checkfirst=True)
