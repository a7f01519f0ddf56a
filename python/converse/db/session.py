"""Sessions for the conversation store.

Route handlers get one session per request from get_db(). Service code
wraps each write in transaction(), which is the unit the cascade and the
chunk sequencer rely on for atomicity.
"""

from collections.abc import Generator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from converse.db.engine import get_engine


def create_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Session factory bound to ``engine``, or to the configured engine.

    Objects stay readable after commit; services build pydantic records from
    rows and never rely on lazy refresh.
    """
    return sessionmaker(
        bind=engine or get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


@lru_cache
def get_session_factory() -> sessionmaker[Session]:
    return create_session_factory()


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session; closed when the response is done."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Generator[None, None, None]:
    """Commit the enclosed writes, or roll all of them back and re-raise.

    Row locks taken inside the block (message rows for chunk sequencing,
    conversation rows for cascades) are held until it exits.
    """
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise
