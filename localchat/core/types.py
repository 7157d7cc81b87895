"""Shared data types for localchat."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Message role in conversation."""

    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """A single message in the conversation.

    ``token_count`` is derived from ``content``; ``None`` means it has not
    been counted yet. Only ``ContextWindowManager`` assigns it.
    """

    role: Role
    content: str = ""
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=_now)
    token_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "token_count": self.token_count or 0,
        }


@dataclass
class Session:
    """A persisted conversation."""

    model: str
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    messages: list[Message] = field(default_factory=list)
    total_tokens: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def touch(self) -> None:
        """Bump ``updated_at`` after a mutation."""
        self.updated_at = _now()

    def get_message(self, message_id: str) -> Message | None:
        # Newest first: the streamed message is almost always the last one
        for msg in reversed(self.messages):
            if msg.id == message_id:
                return msg
        return None

    def to_dict(self, include_messages: bool = True) -> dict[str, Any]:
        """Read-only view for rendering."""
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "model": self.model,
            "total_tokens": self.total_tokens,
            "message_count": len(self.messages),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_messages:
            data["messages"] = [m.to_dict() for m in self.messages]
        return data


class GenerationState(str, Enum):
    """Lifecycle of one send operation."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class GenerationResult:
    """Outcome of ``ChatEngine.send_message``."""

    state: GenerationState
    session_id: str | None = None
    content: str = ""
    message: Message | None = None  # Assistant message, None if removed
    error: str | None = None  # User-visible; never set for cancellation

    @property
    def ok(self) -> bool:
        return self.state == GenerationState.COMPLETED and self.error is None
