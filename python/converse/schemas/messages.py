"""Typed message DTOs.

Each DTO carries content and metadata for one role and can turn itself into
the structured record the ingestion service consumes.
"""

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from converse.db.tables import MessageRole


class BaseMessage(BaseModel):
    """A message of a fixed role."""

    role: ClassVar[MessageRole]

    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    def to_record(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "metadata": dict(self.metadata),
        }


class UserMessage(BaseMessage):
    role: ClassVar[MessageRole] = MessageRole.user


class AssistantMessage(BaseMessage):
    role: ClassVar[MessageRole] = MessageRole.assistant


class SystemMessage(BaseMessage):
    role: ClassVar[MessageRole] = MessageRole.system


class ToolCallMessage(BaseMessage):
    role: ClassVar[MessageRole] = MessageRole.tool_call


class ToolResultMessage(BaseMessage):
    role: ClassVar[MessageRole] = MessageRole.tool_result
