"""Anthropic Messages API client (non-streaming and streaming)."""

import threading
from typing import Iterator, Optional

import httpx

from .base import (
    BaseLLM,
    CompletionRequest,
    CompletionResult,
    ContentDelta,
    ErrorEvent,
    MessageMetadata,
    Terminal,
    Turn,
)
from .errors import (
    AuthError,
    CompletionError,
    IncompleteStreamError,
    MissingCredentialError,
    RateLimitError,
    ServiceError,
    TransportError,
)
from .sse import ProtocolErrorHandler, iter_events
from ..config import Config

DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def error_from_response(response: httpx.Response) -> CompletionError:
    """Map a non-2xx response to the error taxonomy."""
    status = response.status_code
    body = response.text
    error_type = ""
    detail = body
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        error_type = str(data["error"].get("type") or "")
        detail = str(data["error"].get("message") or body)

    if status in (401, 403):
        return AuthError(f"Authentication failed ({status}): {detail}")
    if status == 429:
        return RateLimitError(
            f"Rate limited ({status}): {detail}",
            retry_after=_parse_retry_after(response.headers.get("retry-after")),
        )
    return ServiceError(
        f"API error {status}: {detail}",
        status_code=status,
        body=body,
        error_type=error_type,
    )


def error_from_event(event: ErrorEvent) -> CompletionError:
    """Map an in-stream error event to the error taxonomy."""
    message = f"Stream error ({event.kind}): {event.detail}"
    if event.kind in ("authentication_error", "permission_error"):
        return AuthError(message)
    if event.kind == "rate_limit_error":
        return RateLimitError(message)
    return ServiceError(message, body=event.detail, error_type=event.kind)


class CompletionStream:
    """Single-use iterator over the text fragments of one streamed reply.

    Owns the open HTTP response. The response is released when the stream
    ends, when an error is raised, or when ``close()`` is called (also on
    leaving a ``with`` block). Closing early never raises.

    ``terminated`` tells a clean end (the service sent its terminal signal)
    apart from a connection that simply closed.
    """

    def __init__(
        self,
        response: httpx.Response,
        request: CompletionRequest,
        on_protocol_error: Optional[ProtocolErrorHandler] = None,
    ):
        self.request = request
        self.terminated = False
        self.closed = False
        self.stop_reason: Optional[str] = None
        self.input_tokens = 0
        self.output_tokens = 0
        self._parts: list[str] = []
        self._response = response
        self._release_lock = threading.Lock()
        self._on_protocol_error = on_protocol_error
        self._fragments = self._iter_fragments()

    def __iter__(self) -> "CompletionStream":
        return self

    def __next__(self) -> str:
        return next(self._fragments)

    def __enter__(self) -> "CompletionStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def text(self) -> str:
        """Text received so far."""
        return "".join(self._parts)

    def close(self) -> None:
        """Stop reading and release the connection."""
        self._fragments.close()
        self._release()

    def interrupt(self) -> None:
        """Release the connection from another thread.

        A reader blocked on the next fragment wakes up with a
        ``TransportError``. Use ``close()`` from the reading thread.
        """
        self._release()

    def result(self) -> CompletionResult:
        """Aggregate the fragments into a result.

        Raises:
            IncompleteStreamError: If the stream has not ended with a
                terminal signal.
        """
        if not self.terminated:
            raise IncompleteStreamError("Stream ended before the response was complete")
        return CompletionResult(
            text=self.text,
            stop_reason=self.stop_reason,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )

    def _release(self) -> None:
        with self._release_lock:
            if self.closed:
                return
            self.closed = True
        self._response.close()

    def _iter_fragments(self) -> Iterator[str]:
        try:
            events = iter_events(self._response.iter_bytes(), self._on_protocol_error)
            for event in events:
                if isinstance(event, ContentDelta):
                    self._parts.append(event.text)
                    yield event.text
                elif isinstance(event, MessageMetadata):
                    if event.stop_reason is not None:
                        self.stop_reason = event.stop_reason
                    if event.input_tokens is not None:
                        self.input_tokens = event.input_tokens
                    if event.output_tokens is not None:
                        self.output_tokens = event.output_tokens
                elif isinstance(event, ErrorEvent):
                    raise error_from_event(event)
                elif isinstance(event, Terminal):
                    self.terminated = True
        except httpx.RequestError as exc:
            raise TransportError(f"Stream interrupted: {exc}") from exc
        except httpx.StreamError as exc:
            raise TransportError(f"Stream unavailable: {exc}") from exc
        finally:
            self._release()


class AnthropicClient(BaseLLM):
    """Client for the Anthropic Messages API.

    Each call is a fresh, complete request; the client keeps no
    conversation state. Build one per credential and pass it around.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        anthropic_version: str = ANTHROPIC_VERSION,
        transport: Optional[httpx.BaseTransport] = None,
        on_protocol_error: Optional[ProtocolErrorHandler] = None,
    ):
        if not api_key:
            raise MissingCredentialError("API key is not configured")
        self.api_key = api_key
        self.on_protocol_error = on_protocol_error
        self.http = httpx.Client(
            base_url=base_url,
            headers={
                "x-api-key": api_key,
                "anthropic-version": anthropic_version,
                "content-type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config, api_key: Optional[str] = None, **kwargs) -> "AnthropicClient":
        """Build a client from configuration, optionally with another key."""
        return cls(
            api_key if api_key is not None else config.api_key,
            base_url=config.base_url,
            timeout=config.request_timeout,
            anthropic_version=config.anthropic_version,
            **kwargs,
        )

    def close(self) -> None:
        """Close pooled connections."""
        self.http.close()

    def _send(self, request: CompletionRequest, stream: bool, timeout: Optional[float]) -> httpx.Response:
        http_request = self.http.build_request(
            "POST",
            "/messages",
            json=request.to_payload(stream=stream),
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        try:
            response = self.http.send(http_request, stream=stream)
        except httpx.RequestError as exc:
            raise TransportError(f"Request failed: {exc}") from exc

        if response.is_success:
            return response

        try:
            if stream:
                response.read()
        except httpx.RequestError as exc:
            response.close()
            raise TransportError(f"Failed to read error response: {exc}") from exc
        response.close()
        raise error_from_response(response)

    def complete(self, request: CompletionRequest, *, timeout: Optional[float] = None) -> CompletionResult:
        """Send messages and get the complete response."""
        response = self._send(request, stream=False, timeout=timeout)
        try:
            data = response.json()
        except ValueError as exc:
            raise ServiceError(
                "Malformed response body",
                status_code=response.status_code,
                body=response.text,
            ) from exc
        if not isinstance(data, dict):
            raise ServiceError(
                "Unexpected response body",
                status_code=response.status_code,
                body=response.text,
            )
        try:
            return CompletionResult.from_response(data)
        except (TypeError, ValueError, AttributeError) as exc:
            raise ServiceError(
                f"Unexpected response body: {exc}",
                status_code=response.status_code,
                body=response.text,
            ) from exc

    def stream_complete(self, request: CompletionRequest, *, timeout: Optional[float] = None) -> CompletionStream:
        """Send messages and stream the reply as text fragments.

        Request-level failures raise here; failures after the stream opened
        raise from the iteration that hits them.
        """
        response = self._send(request, stream=True, timeout=timeout)
        return CompletionStream(response, request, self.on_protocol_error)

    def validate_api_key(self, model: str = "claude-3-haiku-20240307") -> bool:
        """Check the key format, then try it with a tiny request."""
        if not self.api_key.startswith("sk-ant-") or len(self.api_key) < 40:
            return False
        check = CompletionRequest(model=model, messages=(Turn("user", "Hi"),), max_tokens=10)
        try:
            self.complete(check)
        except CompletionError:
            return False
        return True
