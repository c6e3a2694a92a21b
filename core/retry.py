"""Retry supervision around admission-gated provider calls."""

import logging

from config.defaults import DEFAULTS
from core.cancel import plain_sleep
from core.errors import ProviderError, ThrottledError

logger = logging.getLogger(__name__)


class RetrySupervisor:
    """Runs a provider call behind admission control with bounded retries.

    Throttling gets a fixed, longer pause; anything else a provider raises
    backs off exponentially (2s, 4s, ...). The last failure is re-raised so
    the calling step can fail loudly.
    """

    def __init__(self, admission, attempts=None, throttle_backoff=None, sleep=None):
        self.admission = admission
        self.attempts = attempts or DEFAULTS["retry_attempts"]
        self.throttle_backoff = (
            DEFAULTS["throttle_backoff"] if throttle_backoff is None else throttle_backoff
        )
        self._sleep = sleep or plain_sleep

    def call(self, provider, estimated_tokens, fn, on_status=None, cancel=None):
        def waitlisted(position, wait_ms):
            if on_status:
                on_status(
                    f"Waitlisted for {provider} at position {position}; "
                    f"resuming in {wait_ms / 1000:.1f}s"
                )

        for attempt in range(1, self.attempts + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            self.admission.acquire(provider, estimated_tokens, waitlisted, cancel)
            try:
                return fn()
            except ProviderError as e:
                if attempt == self.attempts:
                    raise
                if isinstance(e, ThrottledError):
                    delay = self.throttle_backoff
                    reason = "rate limited"
                else:
                    delay = 2 ** attempt
                    reason = "provider error"
                logger.warning(
                    "%s %s (attempt %d/%d): %s", provider, reason, attempt, self.attempts, e,
                )
                if on_status:
                    on_status(
                        f"{provider} {reason}, retrying in {delay}s "
                        f"(attempt {attempt + 1}/{self.attempts})"
                    )
                self._sleep(delay, cancel)
