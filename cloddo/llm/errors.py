"""Error taxonomy for completion requests."""

from typing import Optional


class CompletionError(Exception):
    """Base class for every request-level completion failure."""

    retryable = False


class TransportError(CompletionError):
    """Connection, DNS, TLS or read failure below the HTTP layer."""

    retryable = True


class IncompleteStreamError(TransportError):
    """The stream closed before the service sent a terminal signal."""


class AuthError(CompletionError):
    """The service rejected the credential (or none was supplied)."""


class MissingCredentialError(AuthError):
    """No API key is configured, so no request was sent."""


class RateLimitError(CompletionError):
    """The service is throttling requests."""

    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ServiceError(CompletionError):
    """Any other non-2xx response, or an error event inside a stream."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: str = "",
        error_type: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.error_type = error_type


class ProtocolError(CompletionError):
    """A malformed stream frame.

    Never raised to callers: the parser reports it to a callback and keeps
    reading.
    """

    def __init__(self, message: str, frame: str = ""):
        super().__init__(message)
        self.frame = frame
