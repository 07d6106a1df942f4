"""Message lifecycle controller: one outbound chat turn at a time per chat.

A submission moves through these states::

    composing -> optimistic-appended -> awaiting-response -> resolved | failed

The user's message is appended to the log (status ``pending``) before the
request is sent, so the log reflects what the user typed even if the request
fails. On success the assistant reply is appended and the user message is
marked ``complete``. On failure the user message stays in the log marked
``failed``, the chat gets an error, and the typed text is handed back so it
can be put back into the input box.

Each chat has at most one submission in flight. A second submit while one is
pending is rejected without touching the log. Results are always applied to
the chat the submission was made on, whichever chat is active by then.
"""

import threading
import time
from contextlib import closing
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

from ..abort_controller import AbortController
from ..llm.base import ROLES, BaseLLM, CompletionRequest, CompletionResult, Turn
from ..llm.errors import (
    AuthError,
    CompletionError,
    MissingCredentialError,
    RateLimitError,
    ServiceError,
    TransportError,
)
from ..logging import ConversationLogger, get_logger
from .message_log import ChatMessage, MessageLog, MessageStatus, iso_timestamp, message_id

ClientFactory = Callable[[str], BaseLLM]
CredentialLookup = Callable[[], Optional[str]]
FragmentCallback = Callable[[str], None]
DoneCallback = Callable[["SubmitOutcome"], None]


def as_completion_error(exc: Exception) -> CompletionError:
    """Fold an unexpected failure into the error taxonomy."""
    if isinstance(exc, CompletionError):
        return exc
    error = ServiceError(f"Request could not be completed: {exc}")
    error.__cause__ = exc
    return error


class SubmissionState(str, Enum):
    """How a submission ended."""
    REJECTED = "rejected"
    RESOLVED = "resolved"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ChatError:
    """User-visible error state for a chat."""
    kind: str  # missing_credential, auth, rate_limit, transport, service, internal
    message: str
    retryable: bool = False
    retry_after: Optional[float] = None

    @classmethod
    def from_exception(cls, exc: CompletionError) -> "ChatError":
        if isinstance(exc, MissingCredentialError):
            return cls(
                "missing_credential",
                "No API key is configured. Add your Anthropic API key to continue.",
            )
        if isinstance(exc, AuthError):
            return cls("auth", f"The API key was rejected. Check it and try again. ({exc})")
        if isinstance(exc, RateLimitError):
            if exc.retry_after is not None:
                wait = f"Try again in {exc.retry_after:g} seconds."
            else:
                wait = "Try again shortly."
            return cls("rate_limit", f"The service is busy. {wait}", True, exc.retry_after)
        if isinstance(exc, TransportError):
            return cls("transport", f"Could not reach the service: {exc}. Check your connection and retry.", True)
        return cls("service", f"The service returned an error: {exc}", exc.retryable)


@dataclass(frozen=True)
class SubmitOutcome:
    """Result of one submit/retry call."""
    state: SubmissionState
    chat_id: str
    user_message: Optional[ChatMessage] = None
    assistant_message: Optional[ChatMessage] = None
    result: Optional[CompletionResult] = None
    error: Optional[ChatError] = None
    restore_text: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state in (SubmissionState.RESOLVED, SubmissionState.ABORTED)


@dataclass(frozen=True)
class ChatEvent:
    """Notification for the UI layer."""
    kind: str  # appended, updated, fragment, resolved, failed
    chat_id: str
    message: Optional[ChatMessage] = None
    text: str = ""
    error: Optional[ChatError] = None


class MessageLifecycleController:
    """Drives submissions from typed text to a reconciled message log."""

    def __init__(
        self,
        log: MessageLog,
        client_factory: ClientFactory,
        credential_lookup: CredentialLookup,
        *,
        model: str,
        max_tokens: int,
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
        logger: Optional[ConversationLogger] = None,
        clock: Callable[[], float] = time.time,
    ):
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0:
            raise ValueError(f"max_tokens must be a positive integer, got {max_tokens!r}")
        self.log = log
        self.client_factory = client_factory
        self.credential_lookup = credential_lookup
        self.model = model
        self.max_tokens = max_tokens
        self.system = system
        self.temperature = temperature
        self.timeout = timeout
        self.logger = logger or get_logger()
        self.clock = clock

        self.active_chat_id: Optional[str] = None
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()
        self._errors: dict[str, ChatError] = {}
        self._drafts: dict[str, str] = {}
        self._listeners: list[Callable[[ChatEvent], None]] = []
        self._client: Optional[BaseLLM] = None
        self._client_key: Optional[str] = None
        self._client_lock = threading.Lock()

    # Chat-level state

    def switch_chat(self, chat_id: str) -> None:
        """Make another chat active. In-flight submissions keep running."""
        self.active_chat_id = chat_id

    def is_pending(self, chat_id: str) -> bool:
        with self._lock:
            return chat_id in self._in_flight

    def error_for(self, chat_id: str) -> Optional[ChatError]:
        return self._errors.get(chat_id)

    def clear_error(self, chat_id: str) -> None:
        self._errors.pop(chat_id, None)

    def draft(self, chat_id: str) -> str:
        return self._drafts.get(chat_id, "")

    def set_draft(self, chat_id: str, text: str) -> None:
        if text:
            self._drafts[chat_id] = text
        else:
            self._drafts.pop(chat_id, None)

    def add_listener(self, listener: Callable[[ChatEvent], None]) -> None:
        self._listeners.append(listener)

    def _emit(self, kind: str, chat_id: str, **fields) -> None:
        event = ChatEvent(kind=kind, chat_id=chat_id, **fields)
        for listener in list(self._listeners):
            listener(event)

    # Guard

    def _claim(self, chat_id: str) -> bool:
        with self._lock:
            if chat_id in self._in_flight:
                return False
            self._in_flight.add(chat_id)
            return True

    def _release(self, chat_id: str) -> None:
        with self._lock:
            self._in_flight.discard(chat_id)

    # Submissions

    def submit(
        self,
        chat_id: str,
        text: str,
        *,
        stream: bool = False,
        on_fragment: Optional[FragmentCallback] = None,
        abort: Optional[AbortController] = None,
    ) -> SubmitOutcome:
        """Send typed text as a new user turn and wait for the reply.

        Returns a REJECTED outcome, with no side effects, for blank text or
        when the chat already has a submission in flight.
        """
        if not text.strip() or not self._claim(chat_id):
            return SubmitOutcome(SubmissionState.REJECTED, chat_id)
        try:
            return self._run(chat_id, text, None, stream, on_fragment, abort)
        finally:
            self._release(chat_id)

    def retry(
        self,
        chat_id: str,
        *,
        stream: bool = False,
        on_fragment: Optional[FragmentCallback] = None,
        abort: Optional[AbortController] = None,
    ) -> SubmitOutcome:
        """Re-send the chat's latest user message if it failed.

        The failed message is reused, so no duplicate user turn is added.
        """
        if not self._claim(chat_id):
            return SubmitOutcome(SubmissionState.REJECTED, chat_id)
        try:
            target = self._retry_target(chat_id)
            if target is None:
                return SubmitOutcome(SubmissionState.REJECTED, chat_id)
            return self._run(chat_id, target.content, target, stream, on_fragment, abort)
        finally:
            self._release(chat_id)

    def submit_in_background(
        self,
        chat_id: str,
        text: str,
        *,
        stream: bool = False,
        on_fragment: Optional[FragmentCallback] = None,
        abort: Optional[AbortController] = None,
        on_done: Optional[DoneCallback] = None,
    ) -> Optional[threading.Thread]:
        """Like ``submit`` but runs on a worker thread.

        The chat is claimed before returning, so a rejected submission is
        reported immediately (through ``on_done``) and no thread is started.
        ``on_done`` is called exactly once, whatever happens on the worker.
        """
        if not text.strip() or not self._claim(chat_id):
            if on_done:
                on_done(SubmitOutcome(SubmissionState.REJECTED, chat_id))
            return None
        return self._start_worker(
            chat_id,
            text,
            lambda: self._run(chat_id, text, None, stream, on_fragment, abort),
            on_done,
        )

    def retry_in_background(
        self,
        chat_id: str,
        *,
        stream: bool = False,
        on_fragment: Optional[FragmentCallback] = None,
        abort: Optional[AbortController] = None,
        on_done: Optional[DoneCallback] = None,
    ) -> Optional[threading.Thread]:
        """Like ``retry`` but runs on a worker thread."""
        if not self._claim(chat_id):
            if on_done:
                on_done(SubmitOutcome(SubmissionState.REJECTED, chat_id))
            return None
        try:
            target = self._retry_target(chat_id)
        except Exception:
            self._release(chat_id)
            raise
        if target is None:
            self._release(chat_id)
            if on_done:
                on_done(SubmitOutcome(SubmissionState.REJECTED, chat_id))
            return None
        return self._start_worker(
            chat_id,
            target.content,
            lambda: self._run(chat_id, target.content, target, stream, on_fragment, abort),
            on_done,
        )

    # Internals

    def _retry_target(self, chat_id: str) -> Optional[ChatMessage]:
        """The latest user message, if it failed."""
        target = next(
            (m for m in reversed(self.log.history(chat_id)) if m.role == "user"),
            None,
        )
        if target is None or target.status != MessageStatus.FAILED:
            return None
        return target

    def _start_worker(
        self,
        chat_id: str,
        text: str,
        run: Callable[[], SubmitOutcome],
        on_done: Optional[DoneCallback],
    ) -> threading.Thread:
        """Run a claimed submission on a daemon thread and report its outcome."""

        def worker():
            try:
                outcome = run()
            except Exception as exc:
                outcome = self._abandon(chat_id, text, exc)
            finally:
                self._release(chat_id)
            if on_done:
                on_done(outcome)

        thread = threading.Thread(target=worker, name=f"submit-{chat_id}", daemon=True)
        thread.start()
        return thread

    def _abandon(self, chat_id: str, text: str, exc: Exception) -> SubmitOutcome:
        """Record a submission that died before it could be reconciled."""
        error = ChatError("internal", f"Something went wrong while sending: {exc}")
        # The chat is still claimed, so unsettled turns belong to this submission
        try:
            for message in self.log.history(chat_id):
                if message.status in (MessageStatus.PENDING, MessageStatus.STREAMING):
                    self.log.update(chat_id, message.with_status(MessageStatus.FAILED))
        except Exception as cleanup_exc:
            self.logger.log_error(repr(cleanup_exc), chat_id=chat_id, kind=error.kind)
        self._errors[chat_id] = error
        self._drafts[chat_id] = text
        self.logger.log_error(repr(exc), chat_id=chat_id, kind=error.kind)
        return SubmitOutcome(SubmissionState.FAILED, chat_id, error=error, restore_text=text)

    def _get_client(self) -> BaseLLM:
        key = self.credential_lookup()
        if not key:
            raise MissingCredentialError("API key is not configured")
        with self._client_lock:
            if self._client is None or key != self._client_key:
                self._client = self.client_factory(key)
                self._client_key = key
            return self._client

    def _new_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        status: MessageStatus,
        token_count: Optional[int] = None,
    ) -> ChatMessage:
        now = self.clock()
        taken = {m.id for m in self.log.history(chat_id)}
        return ChatMessage(
            id=message_id(role, now, taken),
            chat_id=chat_id,
            role=role,
            content=content,
            created_at=iso_timestamp(now),
            token_count=token_count,
            status=status,
        )

    def _build_request(self, chat_id: str, user: ChatMessage) -> CompletionRequest:
        """History up to and including ``user``, skipping failed turns."""
        turns = []
        for message in self.log.history(chat_id):
            if message.id == user.id:
                turns.append(Turn(message.role, message.content))
                break
            if message.role in ROLES and message.status == MessageStatus.COMPLETE:
                turns.append(Turn(message.role, message.content))
        return CompletionRequest(
            model=self.model,
            messages=turns,
            max_tokens=self.max_tokens,
            system=self.system or None,
            temperature=self.temperature,
        )

    def _run(
        self,
        chat_id: str,
        text: str,
        existing: Optional[ChatMessage],
        stream: bool,
        on_fragment: Optional[FragmentCallback],
        abort: Optional[AbortController],
    ) -> SubmitOutcome:
        # optimistic-appended
        if existing is None:
            user = self._new_message(chat_id, "user", text, MessageStatus.PENDING)
            self.log.append(chat_id, user)
            self._emit("appended", chat_id, message=user)
        else:
            user = existing.with_status(MessageStatus.PENDING)
            self.log.update(chat_id, user)
            self._emit("updated", chat_id, message=user)
        self._drafts.pop(chat_id, None)
        self.logger.log_user_input(chat_id, text)

        # awaiting-response
        try:
            client = self._get_client()
            request = self._build_request(chat_id, user)
            self.logger.log_request(chat_id, request.to_payload(stream=stream))
        except Exception as exc:
            return self._fail(chat_id, user, as_completion_error(exc))

        if stream:
            return self._stream_reply(chat_id, user, client, request, on_fragment, abort)
        return self._complete_reply(chat_id, user, client, request)

    def _complete_reply(
        self,
        chat_id: str,
        user: ChatMessage,
        client: BaseLLM,
        request: CompletionRequest,
    ) -> SubmitOutcome:
        try:
            result = client.complete(request, timeout=self.timeout)
            assistant = self._new_message(
                chat_id, "assistant", result.text, MessageStatus.COMPLETE, result.output_tokens or None
            )
            return self._resolve(chat_id, user, assistant, result, SubmissionState.RESOLVED, logged=False)
        except Exception as exc:
            return self._fail(chat_id, user, as_completion_error(exc))

    def _stream_reply(
        self,
        chat_id: str,
        user: ChatMessage,
        client: BaseLLM,
        request: CompletionRequest,
        on_fragment: Optional[FragmentCallback],
        abort: Optional[AbortController],
    ) -> SubmitOutcome:
        assistant = None
        aborted = False
        try:
            stream = client.stream_complete(request, timeout=self.timeout)
            # Abort from another thread closes the connection under a blocked read
            interrupt = stream.interrupt
            if abort is not None:
                abort.add_callback(interrupt)
            try:
                with closing(stream):
                    assistant = self._new_message(chat_id, "assistant", "", MessageStatus.STREAMING)
                    self.log.append(chat_id, assistant)
                    self._emit("appended", chat_id, message=assistant)

                    try:
                        for fragment in stream:
                            assistant = replace(assistant, content=assistant.content + fragment)
                            self.log.update(chat_id, assistant)
                            self._emit("fragment", chat_id, message=assistant, text=fragment)
                            if on_fragment:
                                on_fragment(fragment)
                            if abort is not None and abort.is_aborted:
                                aborted = True
                                break
                    except TransportError:
                        if abort is None or not abort.is_aborted:
                            raise
                        aborted = True
                    if abort is not None and abort.is_aborted and not stream.terminated:
                        aborted = True

                    if aborted:
                        result = CompletionResult(
                            text=stream.text,
                            stop_reason="aborted",
                            input_tokens=stream.input_tokens,
                            output_tokens=stream.output_tokens,
                        )
                        self.logger.log_stream_event("aborted", stream.text, {"chat_id": chat_id})
                    else:
                        result = stream.result()
            finally:
                if abort is not None:
                    abort.remove_callback(interrupt)

            assistant = assistant.with_status(
                MessageStatus.COMPLETE, content=result.text, token_count=result.output_tokens or None
            )
            state = SubmissionState.ABORTED if aborted else SubmissionState.RESOLVED
            return self._resolve(chat_id, user, assistant, result, state, logged=True)
        except Exception as exc:
            return self._fail(chat_id, user, as_completion_error(exc), assistant)

    def _resolve(
        self,
        chat_id: str,
        user: ChatMessage,
        assistant: ChatMessage,
        result: CompletionResult,
        state: SubmissionState,
        logged: bool,
    ) -> SubmitOutcome:
        user = user.with_status(MessageStatus.COMPLETE)
        self.log.update(chat_id, user)
        self._emit("updated", chat_id, message=user)

        if logged:
            self.log.update(chat_id, assistant)
        else:
            self.log.append(chat_id, assistant)
        self._errors.pop(chat_id, None)

        self.logger.log_model_response(
            chat_id,
            result.text,
            self.model,
            {"input_tokens": result.input_tokens, "output_tokens": result.output_tokens},
        )
        self._emit("resolved", chat_id, message=assistant)
        return SubmitOutcome(state, chat_id, user, assistant, result)

    def _fail(
        self,
        chat_id: str,
        user: ChatMessage,
        exc: CompletionError,
        assistant: Optional[ChatMessage] = None,
    ) -> SubmitOutcome:
        user = user.with_status(MessageStatus.FAILED)
        self.log.update(chat_id, user)
        self._emit("updated", chat_id, message=user)

        if assistant is not None:
            assistant = assistant.with_status(MessageStatus.FAILED)
            self.log.update(chat_id, assistant)
            self._emit("updated", chat_id, message=assistant)

        error = ChatError.from_exception(exc)
        self._errors[chat_id] = error
        self._drafts[chat_id] = user.content
        self.logger.log_error(str(exc), chat_id=chat_id, kind=error.kind)
        self._emit("failed", chat_id, message=user, error=error)
        return SubmitOutcome(
            SubmissionState.FAILED,
            chat_id,
            user_message=user,
            assistant_message=assistant,
            error=error,
            restore_text=user.content,
        )
