"""FastAPI dependencies for route handlers."""

from fastapi import Request

from converse.db.session import get_db, get_session_factory
from converse.db.tables import Tables
from converse.services.events import EventSink
from converse.services.owners import OwnerRegistry

__all__ = ["get_db", "get_event_sink", "get_owner_registry", "get_session_factory", "get_tables"]


def get_event_sink(request: Request) -> EventSink:
    """The sink created at app startup, stored in app.state."""
    return request.app.state.event_sink


def get_tables(request: Request) -> Tables:
    return request.app.state.tables


def get_owner_registry(request: Request) -> OwnerRegistry:
    return request.app.state.owner_registry
