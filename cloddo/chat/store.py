"""File-backed chat storage."""

import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .message_log import ChatMessage, MessageLog, MessageStatus


@dataclass
class ChatRecord:
    """A saved chat and its messages."""
    id: str
    title: str
    created_at: str  # ISO format
    last_modified: str  # ISO format
    messages: list[ChatMessage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert chat to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "last_modified": self.last_modified,
            "messages": [msg.to_dict() for msg in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatRecord":
        """Create chat from dictionary."""
        return cls(
            id=data["id"],
            title=data.get("title", "Untitled"),
            created_at=data.get("created_at", ""),
            last_modified=data.get("last_modified", ""),
            messages=[ChatMessage.from_dict(m) for m in data.get("messages", [])],
        )


class ChatStore(MessageLog):
    """Stores each chat as a JSON file in .cloddo/chats/.

    Also serves as the controller's message log, so appends from a
    background submission land in the file of the chat they belong to.
    """

    CHATS_DIR = "chats"
    DEFAULT_TITLE = "New Chat"

    def __init__(self, project_root: Path):
        self.project_root = Path(project_root)
        self.chats_dir = self.project_root / ".cloddo" / self.CHATS_DIR
        self._lock = threading.RLock()
        # Chats whose streaming message has unsaved growth
        self._streaming: dict[str, ChatRecord] = {}
        self._ensure_chats_dir()

    def _ensure_chats_dir(self) -> None:
        """Create chats directory if it doesn't exist."""
        self.chats_dir.mkdir(parents=True, exist_ok=True)

    def _get_chat_path(self, chat_id: str) -> Path:
        return self.chats_dir / f"{chat_id}.json"

    def create_chat(self, title: str = "") -> ChatRecord:
        """Create and save a new empty chat."""
        now = datetime.now().isoformat()
        chat = ChatRecord(
            id=str(uuid.uuid4())[:8],  # Short UUID for readability
            title=title or self.DEFAULT_TITLE,
            created_at=now,
            last_modified=now,
        )
        self.save_chat(chat)
        return chat

    def save_chat(self, chat: ChatRecord) -> None:
        """Save chat to its JSON file."""
        chat.last_modified = datetime.now().isoformat()

        # Title untitled chats after their first user message
        if chat.title == self.DEFAULT_TITLE:
            first_user = next((m for m in chat.messages if m.role == "user"), None)
            if first_user:
                title = first_user.content
                title = (title[:50] + "...") if len(title) > 50 else title
                chat.title = title.replace("\n", " ").strip() or self.DEFAULT_TITLE

        with self._lock:
            with open(self._get_chat_path(chat.id), "w", encoding="utf-8") as f:
                json.dump(chat.to_dict(), f, ensure_ascii=False, indent=2)

    def load_chat(self, chat_id: str) -> ChatRecord | None:
        """Load chat from its JSON file."""
        chat_path = self._get_chat_path(chat_id)

        with self._lock:
            if not chat_path.exists():
                return None
            try:
                with open(chat_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                return ChatRecord.from_dict(data)
            except (json.JSONDecodeError, KeyError, ValueError):
                # Corrupted chat file
                return None

    def list_chats(self) -> list[dict[str, Any]]:
        """List all chats with metadata, newest first."""
        chats = []

        with self._lock:
            for chat_file in self.chats_dir.glob("*.json"):
                try:
                    with open(chat_file, "r", encoding="utf-8") as f:
                        data = json.load(f)
                except (json.JSONDecodeError, OSError):
                    # Skip corrupted files
                    continue
                chats.append({
                    "id": data.get("id", chat_file.stem),
                    "title": data.get("title", "Untitled"),
                    "created_at": data.get("created_at", ""),
                    "last_modified": data.get("last_modified", ""),
                    "message_count": len(data.get("messages", [])),
                })

        chats.sort(key=lambda c: c.get("last_modified", ""), reverse=True)
        return chats

    def delete_chat(self, chat_id: str) -> bool:
        """Delete a chat file."""
        chat_path = self._get_chat_path(chat_id)

        with self._lock:
            self._streaming.pop(chat_id, None)
            if chat_path.exists():
                chat_path.unlink()
                return True
        return False

    # MessageLog

    def _require_chat(self, chat_id: str) -> ChatRecord:
        chat = self._streaming.get(chat_id) or self.load_chat(chat_id)
        if chat is None:
            raise KeyError(f"Chat {chat_id} not found")
        return chat

    def history(self, chat_id: str) -> list[ChatMessage]:
        with self._lock:
            chat = self._streaming.get(chat_id) or self.load_chat(chat_id)
            return list(chat.messages) if chat else []

    def append(self, chat_id: str, message: ChatMessage) -> None:
        with self._lock:
            chat = self._require_chat(chat_id)
            chat.messages.append(message)
            self.save_chat(chat)
            self._streaming.pop(chat_id, None)

    def update(self, chat_id: str, message: ChatMessage) -> None:
        """Replace a message by id.

        Growth of a message that stays ``streaming`` is kept in memory; the
        file is written when the message changes status.
        """
        with self._lock:
            chat = self._require_chat(chat_id)
            for i, existing in enumerate(chat.messages):
                if existing.id == message.id:
                    chat.messages[i] = message
                    if existing.status == message.status == MessageStatus.STREAMING:
                        self._streaming[chat_id] = chat
                    else:
                        self.save_chat(chat)
                        self._streaming.pop(chat_id, None)
                    return
        raise KeyError(f"Message {message.id} not found in chat {chat_id}")
