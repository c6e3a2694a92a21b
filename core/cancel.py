"""Cooperative cancellation for long waits."""

import threading
import time

from core.errors import RunCancelled


class CancelToken:
    """Caller-visible cancellation flag.

    Every wait inside the pipeline goes through sleep() so that stop() on
    the orchestrator interrupts backoffs and waitlist sleeps immediately.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise RunCancelled("Run cancelled")

    def sleep(self, seconds: float):
        """Sleep for up to `seconds`; raise RunCancelled if cancelled meanwhile."""
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        if self._event.wait(seconds):
            raise RunCancelled("Run cancelled")


def plain_sleep(seconds: float, cancel: CancelToken = None):
    """Sleep helper used when a component was built without an injected sleeper."""
    if cancel is not None:
        cancel.sleep(seconds)
    elif seconds > 0:
        time.sleep(seconds)
