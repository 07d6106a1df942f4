"""Conversation logging for debugging and analysis."""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

# Log directory
LOG_DIR = Path.home() / ".cloddo" / "logs"


def ensure_log_dir(log_dir: Optional[Path] = None) -> Path:
    """Create logs directory if it doesn't exist."""
    log_dir = Path(log_dir or LOG_DIR)
    if not log_dir.exists():
        log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


class ConversationLogger:
    """Logs chat submissions, responses and stream events to JSONL files."""

    def __init__(self, model_name: str = "unknown", log_dir: Optional[Path] = None):
        self.model_name = model_name
        self.session_id = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = ensure_log_dir(log_dir) / f"session_{self.session_id}.jsonl"
        self.enabled = True

        # Write session header
        self._write_entry({
            "type": "session_start",
            "model": self.model_name,
            "timestamp": datetime.now().isoformat(),
        })

    def log_user_input(self, chat_id: str, message: str) -> None:
        """Log user input."""
        if not self.enabled:
            return
        self._write_entry({
            "type": "user",
            "chat_id": chat_id,
            "content": message,
            "timestamp": datetime.now().isoformat(),
        })

    def log_model_response(
        self,
        chat_id: str,
        response: str,
        model: Optional[str] = None,
        usage: Optional[dict] = None,
    ) -> None:
        """Log model response."""
        if not self.enabled:
            return
        entry = {
            "type": "assistant",
            "chat_id": chat_id,
            "model": model or self.model_name,
            "content": response,
            "timestamp": datetime.now().isoformat(),
        }
        if usage:
            entry["usage"] = usage
        self._write_entry(entry)

    def log_stream_event(self, event_type: str, content: str, meta: dict = None) -> None:
        """Log individual streaming event for debugging."""
        if not self.enabled:
            return
        entry = {
            "type": "stream_event",
            "event_type": event_type,
            "content": content[:500] if content else "",  # Truncate
            "timestamp": datetime.now().isoformat(),
        }
        if meta:
            entry["meta"] = meta
        self._write_entry(entry)

    def log_request(self, chat_id: str, payload: dict) -> None:
        """Log the request body sent to the API."""
        if not self.enabled:
            return
        self._write_entry({
            "type": "api_request",
            "chat_id": chat_id,
            "model": payload.get("model"),
            "stream": payload.get("stream"),
            "messages": payload.get("messages", []),
            "timestamp": datetime.now().isoformat(),
        })

    def log_error(self, error: str, chat_id: Optional[str] = None, kind: str = "") -> None:
        """Log error."""
        if not self.enabled:
            return
        entry = {
            "type": "error",
            "error": error,
            "timestamp": datetime.now().isoformat(),
        }
        if chat_id:
            entry["chat_id"] = chat_id
        if kind:
            entry["kind"] = kind
        self._write_entry(entry)

    def _write_entry(self, entry: dict) -> None:
        """Write a log entry to file."""
        try:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError:
            pass  # Logging should not break the app

    @property
    def log_path(self) -> Path:
        """Return path to current log file."""
        return self.log_file


# Global logger instance
_logger: Optional[ConversationLogger] = None


def get_logger() -> ConversationLogger:
    """Get or create the global logger instance."""
    global _logger
    if _logger is None:
        _logger = ConversationLogger()
    return _logger


def init_logger(model_name: str, log_dir: Optional[Path] = None) -> ConversationLogger:
    """Initialize logger with model name."""
    global _logger
    _logger = ConversationLogger(model_name, log_dir=log_dir)
    return _logger
