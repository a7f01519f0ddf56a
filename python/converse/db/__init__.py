"""Database module for Converse.

Provides engine creation, session management, transaction helpers, and the
table builder.
"""

from converse.db.engine import create_db_engine, get_engine
from converse.db.session import get_db, transaction
from converse.db.tables import (
    TERMINAL_STATUSES,
    MessageRole,
    MessageStatus,
    Tables,
    build_tables,
    get_tables,
)

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "get_db",
    "transaction",
    # Tables
    "Tables",
    "build_tables",
    "get_tables",
    # Enums
    "MessageRole",
    "MessageStatus",
    "TERMINAL_STATUSES",
]
