"""Admission control: per-provider token bucket with a FIFO waitlist.

Each provider gets a fixed 60-second window with a request ceiling (rpm) and
a token ceiling (tpm). Callers queue in a shared FIFO list; only the caller
at the head may claim capacity, and it claims and leaves the queue in one
atomic batch. When the window is spent, callers sleep until the exact next
epoch boundary and re-join at the back.
"""

import enum
import logging
import math
import time
import uuid

from config.defaults import DEFAULTS
from config.providers import PROVIDER_LIMITS
from core.cancel import plain_sleep
from core.errors import CounterStoreUnavailable

logger = logging.getLogger(__name__)


class Admission(str, enum.Enum):
    GRANTED = "granted"            # capacity claimed from the shared window
    FORCED = "forced"              # wait cap reached; caller proceeds anyway
    UNAVAILABLE = "unavailable"    # no counter store, or it failed mid-call
    UNMETERED = "unmetered"        # provider has no configured limits

    @property
    def degraded(self) -> bool:
        return self in (Admission.FORCED, Admission.UNAVAILABLE)


class AdmissionController:
    """Gates outbound calls against shared per-provider rate budgets."""

    def __init__(self, store=None, limits=None, clock=None, sleep=None,
                 namespace=None, epoch_seconds=None, counter_ttl=None,
                 epoch_buffer=None, max_waits=None, queue_poll=None,
                 max_queue_polls=None):
        self.store = store
        self.limits = PROVIDER_LIMITS if limits is None else limits
        self._clock = clock or time.time
        self._sleep = sleep or plain_sleep
        self.namespace = namespace or DEFAULTS["namespace"]
        self.epoch_seconds = epoch_seconds or DEFAULTS["epoch_seconds"]
        self.counter_ttl = counter_ttl or DEFAULTS["counter_ttl"]
        self.epoch_buffer = DEFAULTS["epoch_buffer"] if epoch_buffer is None else epoch_buffer
        self.max_waits = max_waits or DEFAULTS["admission_max_waits"]
        self.queue_poll = DEFAULTS["admission_queue_poll"] if queue_poll is None else queue_poll
        self.max_queue_polls = max_queue_polls or DEFAULTS["admission_max_queue_polls"]
        self._store_down = False

    # -- keys -------------------------------------------------------------

    def epoch(self, now=None):
        now = self._clock() if now is None else now
        return int(now // self.epoch_seconds)

    def queue_key(self, provider):
        return f"queue:{self.namespace}:{provider}"

    def window_keys(self, provider, epoch):
        base = f"rate_limit:{self.namespace}:{provider}"
        return f"{base}:rpm:{epoch}", f"{base}:tpm:{epoch}"

    def seconds_until_next_epoch(self, now=None):
        now = self._clock() if now is None else now
        remainder = now % self.epoch_seconds
        return self.epoch_seconds - remainder + self.epoch_buffer

    # -- main entry point -------------------------------------------------

    def acquire(self, provider, estimated_tokens, on_waitlist=None, cancel=None) -> Admission:
        """Block until `provider` has room for one request of `estimated_tokens`.

        on_waitlist(position, wait_ms) is called before every sleep.
        Never raises for store trouble: an unreachable store yields
        Admission.UNAVAILABLE so the call goes ahead unmetered.
        """
        limits = self.limits.get(provider)
        if not limits:
            return Admission.UNMETERED
        if self.store is None:
            return Admission.UNAVAILABLE

        try:
            result = self._wait_for_capacity(
                provider, max(0, int(estimated_tokens)), limits, on_waitlist, cancel,
            )
        except CounterStoreUnavailable as e:
            if not self._store_down:
                logger.warning("Counter store unavailable, admitting %s unmetered: %s", provider, e)
            self._store_down = True
            return Admission.UNAVAILABLE

        if self._store_down:
            logger.info("Counter store reachable again; rate limiting resumed")
            self._store_down = False
        return result

    def _wait_for_capacity(self, provider, tokens, limits, on_waitlist, cancel):
        request_id = f"{int(self._clock() * 1000)}-{uuid.uuid4().hex[:8]}"
        queue_key = self.queue_key(provider)
        epoch_waits = 0
        queue_polls = 0

        while epoch_waits < self.max_waits:
            if cancel is not None:
                cancel.raise_if_cancelled()

            rpm_key, tpm_key = self.window_keys(provider, self.epoch())

            position = int(self.store.rpush(queue_key, request_id))
            current_rpm = int(self.store.get(rpm_key) or 0)
            current_tpm = int(self.store.get(tpm_key) or 0)

            has_rpm = current_rpm < limits["rpm"]
            has_tpm = current_tpm + tokens <= limits["tpm"]
            is_first = position == 1

            if has_rpm and has_tpm and is_first:
                (self.store.batch()
                    .incr(rpm_key)
                    .incrby(tpm_key, tokens)
                    .expire(rpm_key, self.counter_ttl)
                    .expire(tpm_key, self.counter_ttl)
                    .lrem(queue_key, 1, request_id)
                    .execute())
                return Admission.GRANTED

            # Give up the slot; we re-join at the back after sleeping.
            self.store.lrem(queue_key, 1, request_id)

            if has_rpm and has_tpm and queue_polls < self.max_queue_polls:
                # Budget is fine, someone else is at the head.
                queue_polls += 1
                delay = self.queue_poll
            else:
                epoch_waits += 1
                delay = self.seconds_until_next_epoch()
                logger.info(
                    "%s window full (rpm %d/%d, tpm %d/%d); waiting %.1fs at position %d",
                    provider, current_rpm, limits["rpm"], current_tpm, limits["tpm"],
                    delay, position,
                )

            if on_waitlist is not None:
                on_waitlist(position, int(math.ceil(delay * 1000)))
            self._sleep(delay, cancel)

        logger.warning("%s still saturated after %d waits; proceeding anyway", provider, epoch_waits)
        return Admission.FORCED
