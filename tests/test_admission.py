"""Tests for core.admission: shared windows, FIFO waitlist, degraded modes."""

import logging
import threading
from unittest.mock import MagicMock

import pytest

from core.admission import Admission, AdmissionController
from core.cancel import CancelToken
from core.counter_store import MemoryCounterStore
from core.errors import CounterStoreUnavailable, RunCancelled

LIMITS = {"groq": {"rpm": 2, "tpm": 1000}}


def _controller(clock, store=None, limits=LIMITS, **kwargs):
    store = store if store is not None else MemoryCounterStore(clock=clock)
    return AdmissionController(store=store, limits=limits, clock=clock,
                               sleep=clock.sleep, **kwargs)


def test_keys_and_epoch(clock):
    ctl = _controller(clock)
    assert ctl.epoch() == 2
    assert ctl.queue_key("groq") == "queue:stepsmith:groq"
    assert ctl.window_keys("groq", 2) == (
        "rate_limit:stepsmith:groq:rpm:2",
        "rate_limit:stepsmith:groq:tpm:2",
    )


def test_seconds_until_next_epoch(clock):
    ctl = _controller(clock)
    assert ctl.seconds_until_next_epoch() == pytest.approx(59.6)


def test_grant_claims_window_atomically(clock):
    ctl = _controller(clock)
    assert ctl.acquire("groq", 300) == Admission.GRANTED

    rpm_key, tpm_key = ctl.window_keys("groq", ctl.epoch())
    assert ctl.store.get(rpm_key) == "1"
    assert ctl.store.get(tpm_key) == "300"
    assert ctl.store.lrange(ctl.queue_key("groq")) == []
    assert clock.sleeps == []


def test_exhausted_rpm_waits_for_next_epoch(clock):
    ctl = _controller(clock)
    waits = []
    assert ctl.acquire("groq", 10) == Admission.GRANTED
    assert ctl.acquire("groq", 10) == Admission.GRANTED

    result = ctl.acquire("groq", 10, on_waitlist=lambda pos, ms: waits.append((pos, ms)))

    assert result == Admission.GRANTED
    assert clock.sleeps == [pytest.approx(59.6)]
    assert clock.now == pytest.approx(180.1)
    assert waits[0][0] == 1
    assert 59600 <= waits[0][1] <= 59601
    # the grant landed in the new epoch's window
    rpm_key, _ = ctl.window_keys("groq", 3)
    assert ctl.store.get(rpm_key) == "1"


def test_token_budget_blocks_large_request(clock):
    ctl = _controller(clock)
    assert ctl.acquire("groq", 900) == Admission.GRANTED
    assert ctl.acquire("groq", 200) == Admission.GRANTED
    assert clock.sleeps == [pytest.approx(59.6)]


def test_forced_after_max_waits(clock, caplog):
    ctl = _controller(clock, limits={"groq": {"rpm": 0, "tpm": 1000}}, max_waits=3)
    with caplog.at_level(logging.WARNING, logger="core.admission"):
        assert ctl.acquire("groq", 1) == Admission.FORCED
    assert len(clock.sleeps) == 3
    assert Admission.FORCED.degraded
    assert "proceeding anyway" in caplog.text
    assert ctl.store.lrange(ctl.queue_key("groq")) == []


def test_waits_behind_head_of_queue(clock):
    ctl = _controller(clock, queue_poll=0.25)
    store = ctl.store
    queue = ctl.queue_key("groq")
    store.rpush(queue, "someone-else")
    positions = []

    def sleep(seconds, cancel=None):
        clock.sleep(seconds, cancel)
        store.lrem(queue, 1, "someone-else")

    ctl._sleep = sleep
    result = ctl.acquire("groq", 10, on_waitlist=lambda pos, ms: positions.append((pos, ms)))

    assert result == Admission.GRANTED
    assert clock.sleeps == [0.25]
    assert positions == [(2, 250)]


def test_unknown_provider_is_unmetered(clock):
    assert _controller(clock).acquire("mystery", 10) == Admission.UNMETERED


def test_no_store_is_unavailable():
    ctl = AdmissionController(store=None, limits=LIMITS)
    result = ctl.acquire("groq", 10)
    assert result == Admission.UNAVAILABLE
    assert result.degraded


def test_store_failure_fails_open_per_call(clock, caplog):
    broken = MagicMock()
    broken.rpush.side_effect = CounterStoreUnavailable("down")
    ctl = _controller(clock, store=broken)

    with caplog.at_level(logging.INFO, logger="core.admission"):
        assert ctl.acquire("groq", 10) == Admission.UNAVAILABLE
        assert ctl.acquire("groq", 10) == Admission.UNAVAILABLE
        assert caplog.text.count("Counter store unavailable") == 1

        # store comes back: metering resumes on the next call
        ctl.store = MemoryCounterStore(clock=clock)
        assert ctl.acquire("groq", 10) == Admission.GRANTED
    assert "rate limiting resumed" in caplog.text


def test_cancelled_token_interrupts(clock):
    token = CancelToken()
    token.cancel()
    with pytest.raises(RunCancelled):
        _controller(clock).acquire("groq", 10, cancel=token)


def test_cancel_during_epoch_wait(clock):
    ctl = _controller(clock, limits={"groq": {"rpm": 0, "tpm": 1000}})
    token = CancelToken()

    def sleep(seconds, cancel=None):
        token.cancel()
        cancel.sleep(seconds)

    ctl._sleep = sleep
    with pytest.raises(RunCancelled):
        ctl.acquire("groq", 1, cancel=token)
    assert ctl.store.lrange(ctl.queue_key("groq")) == []


def test_concurrent_callers_within_budget_all_granted():
    store = MemoryCounterStore()
    ctl = AdmissionController(store=store, limits={"groq": {"rpm": 50, "tpm": 100000}},
                              queue_poll=0.005, max_queue_polls=2000)
    results = []
    lock = threading.Lock()
    start = threading.Barrier(8)

    def worker():
        start.wait()
        outcome = ctl.acquire("groq", 100)
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert results == [Admission.GRANTED] * 8
    assert store.lrange(ctl.queue_key("groq")) == []
