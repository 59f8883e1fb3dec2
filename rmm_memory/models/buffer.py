"""
Message buffers for staged reflection.

Each owner has a live buffer (receives turns) and a staging buffer (the
frozen batch being consolidated). Buffers are replaced as whole values.
"""

from enum import Enum
from typing import Any

from langchain_core.messages import BaseMessage
from pydantic import BaseModel, Field

from rmm_memory.models.base import now_ms, response_text


class MessageRole(str, Enum):
    """Roles of buffered messages."""

    HUMAN = "human"
    AI = "ai"
    SYSTEM = "system"
    TOOL = "tool"


_LANGCHAIN_ROLES = {
    "human": MessageRole.HUMAN,
    "ai": MessageRole.AI,
    "system": MessageRole.SYSTEM,
    "tool": MessageRole.TOOL,
}


class BufferedMessage(BaseModel):
    """A single conversation message."""

    role: MessageRole
    content: str

    @classmethod
    def from_langchain(cls, message: BaseMessage) -> "BufferedMessage":
        """Convert a LangChain message; unknown types are treated as system messages."""
        role = _LANGCHAIN_ROLES.get(message.type, MessageRole.SYSTEM)
        return cls(role=role, content=response_text(message))


class MessageBuffer(BaseModel):
    """An ordered batch of messages plus trigger bookkeeping."""

    messages: list[BufferedMessage] = Field(default_factory=list)
    human_message_count: int = Field(default=0, ge=0)
    last_message_timestamp: int = Field(default_factory=now_ms)
    created_at: int = Field(default_factory=now_ms)
    retry_count: int | None = Field(
        default=None,
        description="Failed consolidation attempts recorded on a staging buffer",
    )

    @classmethod
    def empty(cls, now: int | None = None) -> "MessageBuffer":
        """A fresh buffer with no messages."""
        now = now_ms() if now is None else now
        return cls(last_message_timestamp=now, created_at=now)

    @property
    def is_empty(self) -> bool:
        return not self.messages

    def appended(self, messages: list[BufferedMessage], now: int | None = None) -> "MessageBuffer":
        """
        Return a new buffer with messages appended in order.

        The human message count is recomputed from the messages and the
        last-message timestamp moves to ``now``.
        """
        combined = [*self.messages, *messages]
        return self.model_copy(
            update={
                "messages": combined,
                "human_message_count": sum(1 for m in combined if m.role == MessageRole.HUMAN),
                "last_message_timestamp": now_ms() if now is None else now,
            }
        )

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_store(cls, value: Any) -> "MessageBuffer":
        return cls.model_validate(value)
