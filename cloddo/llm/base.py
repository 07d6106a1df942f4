"""Base LLM client interface and request/response values."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Union

if TYPE_CHECKING:
    from .anthropic_client import CompletionStream

ROLES = ("user", "assistant")


@dataclass(frozen=True)
class Turn:
    """One prior conversation turn sent to the service."""
    role: str  # "user", "assistant"
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class CompletionRequest:
    """Everything needed for one completion call.

    The client forwards ``messages`` as given; it does not check that user
    and assistant turns alternate.
    """
    model: str
    messages: tuple[Turn, ...]
    max_tokens: int
    stream: bool = False
    system: Optional[str] = None
    temperature: Optional[float] = None

    def __post_init__(self):
        # Accept any sequence but store an immutable tuple
        object.__setattr__(self, "messages", tuple(self.messages))
        if not self.messages:
            raise ValueError("CompletionRequest needs at least one message")
        if isinstance(self.max_tokens, bool) or not isinstance(self.max_tokens, int) or self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be a positive integer, got {self.max_tokens!r}")
        for turn in self.messages:
            if turn.role not in ROLES:
                raise ValueError(f"Unsupported role: {turn.role!r}")

    def to_payload(self, stream: bool) -> dict:
        """Build the JSON request body with streaming set explicitly."""
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [turn.to_dict() for turn in self.messages],
            "stream": stream,
        }
        if self.system:
            payload["system"] = self.system
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        return payload


@dataclass(frozen=True)
class CompletionResult:
    """Final outcome of a completion call."""
    text: str
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def from_response(cls, data: dict) -> "CompletionResult":
        """Build a result from a non-streaming response body."""
        blocks = data.get("content") or []
        text = "".join(
            block.get("text") or ""
            for block in blocks
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        return cls(
            text=text,
            stop_reason=data.get("stop_reason"),
            input_tokens=int(usage.get("input_tokens", 0) or 0),
            output_tokens=int(usage.get("output_tokens", 0) or 0),
        )


# Stream events

@dataclass(frozen=True)
class ContentDelta:
    """A fragment of assistant text."""
    text: str


@dataclass(frozen=True)
class ErrorEvent:
    """An error reported by the service inside the stream."""
    kind: str
    detail: str = ""


@dataclass(frozen=True)
class Terminal:
    """Clean end of stream."""


@dataclass(frozen=True)
class MessageMetadata:
    """Stop reason and token usage reported while streaming."""
    stop_reason: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


StreamEvent = Union[ContentDelta, ErrorEvent, Terminal, MessageMetadata]


class BaseLLM(ABC):
    """Abstract base class for completion clients."""

    @abstractmethod
    def complete(self, request: CompletionRequest, *, timeout: Optional[float] = None) -> CompletionResult:
        """Send the request and wait for the complete response."""
        pass

    @abstractmethod
    def stream_complete(self, request: CompletionRequest, *, timeout: Optional[float] = None) -> "CompletionStream":
        """Send the request and iterate over text fragments as they arrive."""
        pass

    def validate_api_key(self) -> bool:
        """Check that the service accepts this client's credential."""
        return True
