"""Chat messages and the per-chat message log."""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class MessageStatus(str, Enum):
    """Lifecycle status of a chat message."""
    DRAFT = "draft"
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class ChatMessage:
    """A message in a chat's log."""
    id: str
    chat_id: str
    role: str  # "user", "assistant"
    content: str
    created_at: str  # ISO format
    token_count: Optional[int] = None
    status: MessageStatus = MessageStatus.COMPLETE

    def with_status(self, status: MessageStatus, **changes) -> "ChatMessage":
        return replace(self, status=status, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert message to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at,
            "token_count": self.token_count,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        """Create message from dictionary."""
        return cls(
            id=data["id"],
            chat_id=data["chat_id"],
            role=data["role"],
            content=data.get("content", ""),
            created_at=data.get("created_at", ""),
            token_count=data.get("token_count"),
            status=MessageStatus(data.get("status", MessageStatus.COMPLETE.value)),
        )


def message_id(role: str, timestamp: float, taken: set[str]) -> str:
    """Build ``msg_<role>_<seconds>``, suffixed until unused in the chat."""
    base = f"msg_{role}_{int(timestamp)}"
    candidate = base
    n = 1
    while candidate in taken:
        n += 1
        candidate = f"{base}_{n}"
    return candidate


def iso_timestamp(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class MessageLog(ABC):
    """Ordered message history keyed by chat id."""

    @abstractmethod
    def history(self, chat_id: str) -> list[ChatMessage]:
        """Return the chat's messages, oldest first."""
        pass

    @abstractmethod
    def append(self, chat_id: str, message: ChatMessage) -> None:
        """Append one message to the chat."""
        pass

    @abstractmethod
    def update(self, chat_id: str, message: ChatMessage) -> None:
        """Replace the stored message that has the same id."""
        pass


class InMemoryMessageLog(MessageLog):
    """Process-local message log."""

    def __init__(self):
        self._chats: dict[str, list[ChatMessage]] = {}
        self._lock = threading.Lock()

    def history(self, chat_id: str) -> list[ChatMessage]:
        with self._lock:
            return list(self._chats.get(chat_id, []))

    def append(self, chat_id: str, message: ChatMessage) -> None:
        with self._lock:
            self._chats.setdefault(chat_id, []).append(message)

    def update(self, chat_id: str, message: ChatMessage) -> None:
        with self._lock:
            messages = self._chats.get(chat_id, [])
            for i, existing in enumerate(messages):
                if existing.id == message.id:
                    messages[i] = message
                    return
        raise KeyError(f"Message {message.id} not found in chat {chat_id}")

    def chat_ids(self) -> list[str]:
        with self._lock:
            return list(self._chats)
