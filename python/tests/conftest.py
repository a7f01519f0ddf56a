"""Pytest configuration and fixtures for Converse tests.

Test isolation strategy:
- Without DATABASE_URL, each test runs against its own in-memory SQLite
  database (foreign keys on, StaticPool)
- With a PostgreSQL DATABASE_URL, the schema is created once and each test
  runs inside a savepoint that is rolled back
- Tests needing multiple connections use the direct_db fixture (PostgreSQL only)
- API tests share the test's session with the app through a get_db override
"""

import os
from collections.abc import Generator

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from converse.api.deps import get_db
from converse.app import create_app
from converse.config import TableNames, clear_settings_cache
from converse.db.engine import create_db_engine
from converse.db.session import create_session_factory
from converse.db.tables import Tables, build_tables
from converse.services.conversations import ConversationAggregate, create_conversation
from converse.services.lifecycle import MessageLifecycle
from tests.helpers import RecordingEventSink
from tests.utils.db import (
    DirectSessionManager,
    TestDatabaseManager,
    create_schema,
    is_postgres_url,
)


def get_test_database_url() -> str:
    return os.environ["DATABASE_URL"]


@pytest.fixture(scope="session")
def tables() -> Tables:
    """Schema built from the default table names."""
    return build_tables(TableNames())


@pytest.fixture(scope="session")
def postgres_engine(tables: Tables) -> Generator[Engine | None, None, None]:
    """Shared engine with the schema created, when running on PostgreSQL."""
    url = get_test_database_url()
    if not is_postgres_url(url):
        yield None
        return

    engine = create_db_engine(url)
    create_schema(engine, tables)
    yield engine
    engine.dispose()


@pytest.fixture
def engine(postgres_engine: Engine | None, tables: Tables) -> Generator[Engine, None, None]:
    """Engine for one test: a fresh SQLite database, or the shared PostgreSQL one."""
    if postgres_engine is not None:
        yield postgres_engine
        return

    engine = create_db_engine(get_test_database_url())
    create_schema(engine, tables)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine: Engine) -> Generator[Session, None, None]:
    """Session for one test; nothing it commits outlives the test."""
    if is_postgres_url(get_test_database_url()):
        with TestDatabaseManager(engine) as session:
            yield session
        return

    session = create_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def direct_db(engine: Engine) -> Generator[DirectSessionManager, None, None]:
    """Independent connections that see each other's commits.

    Data registered via register_cleanup() is deleted after the test.
    """
    manager = DirectSessionManager(engine)
    yield manager
    manager.cleanup()


@pytest.fixture
def event_sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def lifecycle(db_session: Session, tables: Tables, event_sink: RecordingEventSink) -> MessageLifecycle:
    return MessageLifecycle(db_session, tables, event_sink)


@pytest.fixture
def conversation(
    db_session: Session, tables: Tables, event_sink: RecordingEventSink
) -> ConversationAggregate:
    """A live conversation; its creation event is cleared from the sink."""
    aggregate = create_conversation(
        db_session, title="Test conversation", tables=tables, sink=event_sink
    )
    event_sink.clear()
    return aggregate


@pytest.fixture
def app(db_session: Session, tables: Tables, event_sink: RecordingEventSink) -> FastAPI:
    """FastAPI app wired to the test session and the recording sink."""
    app = create_app(tables=tables, event_sink=event_sink, log_requests=False)

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the settings cache before each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
