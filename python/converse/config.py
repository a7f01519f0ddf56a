"""Application settings loaded from environment variables.

Environment Configuration:
    CONVERSE_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: SQLAlchemy connection string (required)

Storage Configuration:
    CONVERSE_TABLE_CONVERSATIONS: Table name for conversations
    CONVERSE_TABLE_MESSAGES: Table name for messages
    CONVERSE_TABLE_MESSAGE_CHUNKS: Table name for message chunks
    CONVERSE_TABLE_MESSAGE_ATTACHMENTS: Table name for message attachments

Attachments / Pruning / Broadcasting:
    CONVERSE_DISK: Label of the disk attachments are written to
    CONVERSE_PATH: Path prefix for attachment storage paths
    CONVERSE_PRUNE_DAYS: Days a soft-deleted conversation is kept before pruning
    CONVERSE_BROADCASTING_ENABLED: Publish lifecycle events to the event sink
    CONVERSE_OWNER_KINDS: Comma-separated owner kinds registered at startup
    CONVERSE_LOG_JSON: JSON logs when true, console logs otherwise

Table names are not read from a global at query time. They are collected into
a TableNames struct and passed to build_tables() when the storage layer is
constructed.
"""

import re
from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings

# Table names are interpolated into DDL, so keep them to plain identifiers
TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class TableNames(BaseModel):
    """Names of the four tables owned by the package."""

    conversations: str = "conversations"
    messages: str = "messages"
    message_chunks: str = "message_chunks"
    message_attachments: str = "message_attachments"

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def validate_names(self) -> "TableNames":
        names = [
            self.conversations,
            self.messages,
            self.message_chunks,
            self.message_attachments,
        ]
        invalid = [name for name in names if not TABLE_NAME_PATTERN.match(name)]
        if invalid:
            raise ValueError(f"Invalid table names: {', '.join(invalid)}")
        if len(set(names)) != len(names):
            raise ValueError("Table names must be distinct")
        return self


class Settings(BaseSettings):
    """Application configuration.

    Settings are loaded from environment variables.
    Validation rules:
    - DATABASE_URL is always required
    - Table names must be distinct identifiers
    - CONVERSE_PRUNE_DAYS, when set, must be positive
    """

    converse_env: Environment = Field(default=Environment.LOCAL, alias="CONVERSE_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]

    # Table names
    table_conversations: str = Field(
        default="conversations", alias="CONVERSE_TABLE_CONVERSATIONS"
    )
    table_messages: str = Field(default="messages", alias="CONVERSE_TABLE_MESSAGES")
    table_message_chunks: str = Field(
        default="message_chunks", alias="CONVERSE_TABLE_MESSAGE_CHUNKS"
    )
    table_message_attachments: str = Field(
        default="message_attachments", alias="CONVERSE_TABLE_MESSAGE_ATTACHMENTS"
    )

    # Attachments
    attachments_disk: str = Field(default="local", alias="CONVERSE_DISK")
    attachments_path: str = Field(default="conversations", alias="CONVERSE_PATH")

    # Cleanup
    prune_after_days: int | None = Field(default=None, alias="CONVERSE_PRUNE_DAYS")

    # Broadcasting
    broadcasting_enabled: bool = Field(default=True, alias="CONVERSE_BROADCASTING_ENABLED")

    # Owners
    owner_kinds: str = Field(default="user", alias="CONVERSE_OWNER_KINDS")

    # Logging
    log_json: bool = Field(default=True, alias="CONVERSE_LOG_JSON")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        """Reject settings that would break the storage layer at runtime."""
        if self.prune_after_days is not None and self.prune_after_days < 1:
            raise ValueError("CONVERSE_PRUNE_DAYS must be a positive number of days")

        # Surface bad table names at startup rather than at first query
        try:
            self.table_names
        except ValidationError as exc:
            messages = "; ".join(error["msg"] for error in exc.errors())
            raise ValueError(f"Invalid table configuration: {messages}") from None

        return self

    @property
    def table_names(self) -> TableNames:
        """Collect the configured table names into a TableNames struct."""
        return TableNames(
            conversations=self.table_conversations,
            messages=self.table_messages,
            message_chunks=self.table_message_chunks,
            message_attachments=self.table_message_attachments,
        )

    @property
    def owner_kind_list(self) -> list[str]:
        """Parse CONVERSE_OWNER_KINDS (comma-separated) into a list."""
        return [kind.strip() for kind in self.owner_kinds.split(",") if kind.strip()]

    @property
    def is_sqlite(self) -> bool:
        """Whether the configured database is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
