"""Closed set of batch-ingestion entry shapes.

Raw batch entries are normalized into exactly one of these variants before
anything is written. Past normalization, the only failure left is an
unknown ``type`` tag on a TypedEntry.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from converse.db.tables import MessageRole


class _Entry(BaseModel):
    model_config = ConfigDict(frozen=True)


class TextEntry(_Entry):
    """Plain text; always a user message."""

    kind: Literal["text"] = "text"
    content: str


class RoleEntry(_Entry):
    """Record with an explicit role (enum member or its string tag)."""

    kind: Literal["role"] = "role"
    role: MessageRole
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class TypedEntry(_Entry):
    """Record with a ``type`` tag naming the role."""

    kind: Literal["type"] = "type"
    type: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class RecordEntry(_Entry):
    """Structured record produced by a typed message DTO."""

    kind: Literal["record"] = "record"
    role: MessageRole
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


MessageEntry = Annotated[
    TextEntry | RoleEntry | TypedEntry | RecordEntry,
    Field(discriminator="kind"),
]
