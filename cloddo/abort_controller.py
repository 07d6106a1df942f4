"""Abort controller for stopping a streamed reply early."""

import threading
from typing import Callable


class AbortController:
    """Cooperative cancellation flag shared between a UI and a submission.

    Usage:
        controller = AbortController()

        # In the submission, while a stream is open:
        controller.add_callback(stream.interrupt)

        # From the UI thread or a signal handler:
        controller.abort()

    Callbacks run on the thread that calls ``abort()``, so a reader blocked
    on the network is woken by its connection being closed.
    """

    def __init__(self):
        self._aborted = False
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_aborted(self) -> bool:
        """Check if abort was requested."""
        with self._lock:
            return self._aborted

    def abort(self) -> None:
        """Request abortion of current operation."""
        with self._lock:
            if self._aborted:
                return
            self._aborted = True
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on abort, immediately if already aborted."""
        with self._lock:
            if not self._aborted:
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def reset(self) -> None:
        """Reset abort state for new operation."""
        with self._lock:
            self._aborted = False
            self._callbacks.clear()
