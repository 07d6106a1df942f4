"""LLM clients."""

from .base import (
    BaseLLM,
    CompletionRequest,
    CompletionResult,
    ContentDelta,
    ErrorEvent,
    MessageMetadata,
    StreamEvent,
    Terminal,
    Turn,
)
from .errors import (
    AuthError,
    CompletionError,
    IncompleteStreamError,
    MissingCredentialError,
    ProtocolError,
    RateLimitError,
    ServiceError,
    TransportError,
)
from .anthropic_client import AnthropicClient, CompletionStream

__all__ = [
    "BaseLLM",
    "CompletionRequest",
    "CompletionResult",
    "ContentDelta",
    "ErrorEvent",
    "MessageMetadata",
    "StreamEvent",
    "Terminal",
    "Turn",
    "AuthError",
    "CompletionError",
    "IncompleteStreamError",
    "MissingCredentialError",
    "ProtocolError",
    "RateLimitError",
    "ServiceError",
    "TransportError",
    "AnthropicClient",
    "CompletionStream",
]
