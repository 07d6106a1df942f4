"""Chat messages, storage and the message lifecycle controller."""

from .message_log import ChatMessage, InMemoryMessageLog, MessageLog, MessageStatus
from .store import ChatRecord, ChatStore
from .controller import (
    ChatError,
    ChatEvent,
    MessageLifecycleController,
    SubmissionState,
    SubmitOutcome,
)

__all__ = [
    "ChatMessage",
    "InMemoryMessageLog",
    "MessageLog",
    "MessageStatus",
    "ChatRecord",
    "ChatStore",
    "ChatError",
    "ChatEvent",
    "MessageLifecycleController",
    "SubmissionState",
    "SubmitOutcome",
]
