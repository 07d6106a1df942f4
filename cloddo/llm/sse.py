"""Server-sent event decoding for streamed completions.

Two layers:

- ``LineDecoder`` reassembles arbitrarily chunked bytes (or text) into
  complete lines. A line split across two network reads is held back until
  its terminator arrives; an unterminated tail at end of input is dropped.
- ``parse_frame`` turns one line into at most one stream event. Anything it
  does not understand is skipped so that one bad frame never ends the stream.
"""

import codecs
import json
from typing import Callable, Iterable, Iterator, Optional, Union

from .base import ContentDelta, ErrorEvent, MessageMetadata, StreamEvent, Terminal
from .errors import ProtocolError

DATA_MARKER = "data:"
DONE_SENTINEL = "[DONE]"

ProtocolErrorHandler = Callable[[ProtocolError], None]


class LineDecoder:
    """Incremental splitter from raw fragments to logical lines."""

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Text received after the last line terminator."""
        return self._buffer

    def feed(self, fragment: Union[bytes, str]) -> list[str]:
        """Add a fragment and return every line it completed."""
        if isinstance(fragment, bytes):
            fragment = self._decoder.decode(fragment)
        if not fragment:
            return []

        self._buffer += fragment
        *lines, self._buffer = self._buffer.split("\n")
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def close(self) -> str:
        """End of input: discard and return the unterminated tail."""
        residual = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return residual


def iter_frames(fragments: Iterable[Union[bytes, str]]) -> Iterator[str]:
    """Lazily yield complete lines from a fragment source."""
    decoder = LineDecoder()
    for fragment in fragments:
        yield from decoder.feed(fragment)
    decoder.close()


def _int_or_none(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def parse_frame(frame: str, on_error: Optional[ProtocolErrorHandler] = None) -> Optional[StreamEvent]:
    """Parse one line into a stream event, or None if it carries nothing."""
    if not frame.startswith(DATA_MARKER):
        return None

    payload = frame[len(DATA_MARKER):]
    if payload.startswith(" "):
        payload = payload[1:]

    if payload == DONE_SENTINEL:
        return Terminal()

    try:
        data = json.loads(payload)
    except ValueError:
        if on_error:
            on_error(ProtocolError("Malformed event payload", frame))
        return None

    if not isinstance(data, dict):
        return None

    event_type = data.get("type")

    if event_type == "content_block_delta":
        delta = data.get("delta")
        if isinstance(delta, dict):
            text = delta.get("text")
            if isinstance(text, str) and text:
                return ContentDelta(text)
        return None

    if event_type == "message_stop":
        return Terminal()

    if event_type == "error":
        error = data.get("error")
        if isinstance(error, dict):
            return ErrorEvent(
                kind=str(error.get("type") or "error"),
                detail=str(error.get("message") or ""),
            )
        return ErrorEvent(kind="error", detail=str(error or ""))

    if event_type == "message_start":
        message = data.get("message")
        usage = message.get("usage") if isinstance(message, dict) else None
        if isinstance(usage, dict):
            return MessageMetadata(
                input_tokens=_int_or_none(usage.get("input_tokens")),
                output_tokens=_int_or_none(usage.get("output_tokens")),
            )
        return None

    if event_type == "message_delta":
        delta = data.get("delta") if isinstance(data.get("delta"), dict) else {}
        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        return MessageMetadata(
            stop_reason=delta.get("stop_reason"),
            output_tokens=_int_or_none(usage.get("output_tokens")),
        )

    # Event kinds we do not act on (ping, content_block_start, ...)
    return None


def iter_events(
    fragments: Iterable[Union[bytes, str]],
    on_error: Optional[ProtocolErrorHandler] = None,
) -> Iterator[StreamEvent]:
    """Decode fragments into stream events, stopping after ``Terminal``."""
    for frame in iter_frames(fragments):
        event = parse_frame(frame, on_error)
        if event is None:
            continue
        yield event
        if isinstance(event, Terminal):
            return
