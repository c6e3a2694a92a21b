"""Tests for core.counter_store backends."""

from unittest.mock import MagicMock, patch

import pytest
import redis

from core.counter_store import (
    MemoryCounterStore,
    RedisCounterStore,
    connect_counter_store,
)
from core.errors import CounterStoreUnavailable


# ---------------------------------------------------------------------------
# MemoryCounterStore
# ---------------------------------------------------------------------------

def test_memory_get_missing_is_none():
    assert MemoryCounterStore().get("nope") is None


def test_memory_incr_and_incrby():
    store = MemoryCounterStore()
    assert store.incr("k") == 1
    assert store.incrby("k", 41) == 42
    assert store.get("k") == "42"


def test_memory_expire_missing_key():
    assert MemoryCounterStore().expire("k", 10) is False


def test_memory_keys_expire_with_clock(clock):
    store = MemoryCounterStore(clock=clock)
    store.incr("k")
    assert store.expire("k", 65) is True
    clock.now += 64
    assert store.get("k") == "1"
    clock.now += 1
    assert store.get("k") is None


def test_memory_rpush_returns_position():
    store = MemoryCounterStore()
    assert store.rpush("q", "a") == 1
    assert store.rpush("q", "b") == 2
    assert store.lrange("q") == ["a", "b"]


def test_memory_lrem_removes_one_occurrence():
    store = MemoryCounterStore()
    for item in ("a", "b", "a"):
        store.rpush("q", item)
    assert store.lrem("q", 1, "a") == 1
    assert store.lrange("q") == ["b", "a"]
    assert store.lrem("q", 0, "zzz") == 0


def test_memory_lrem_zero_removes_all():
    store = MemoryCounterStore()
    for item in ("a", "b", "a"):
        store.rpush("q", item)
    assert store.lrem("q", 0, "a") == 2
    assert store.lrange("q") == ["b"]


def test_memory_batch_runs_all_commands():
    store = MemoryCounterStore()
    store.rpush("q", "me")
    results = (store.batch()
               .incr("rpm")
               .incrby("tpm", 300)
               .expire("rpm", 65)
               .expire("tpm", 65)
               .lrem("q", 1, "me")
               .execute())
    assert results == [1, 300, True, True, 1]
    assert store.get("tpm") == "300"
    assert store.lrange("q") == []


def test_memory_batch_rejects_unknown_command():
    with pytest.raises(AttributeError):
        MemoryCounterStore().batch().flushall()


# ---------------------------------------------------------------------------
# RedisCounterStore
# ---------------------------------------------------------------------------

def test_redis_store_delegates_to_client():
    client = MagicMock()
    client.rpush.return_value = 3
    store = RedisCounterStore(client)
    assert store.rpush("q", "id") == 3
    client.rpush.assert_called_once_with("q", "id")


def test_redis_errors_become_unavailable():
    client = MagicMock()
    client.get.side_effect = redis.ConnectionError("refused")
    store = RedisCounterStore(client)
    with pytest.raises(CounterStoreUnavailable, match="refused"):
        store.get("k")


def test_redis_batch_uses_transaction_pipeline():
    client = MagicMock()
    pipe = client.pipeline.return_value
    pipe.execute.return_value = [1, 10, True, True, 1]
    store = RedisCounterStore(client)

    result = store.batch().incr("rpm").incrby("tpm", 10).execute()

    client.pipeline.assert_called_once_with(transaction=True)
    pipe.incr.assert_called_once_with("rpm")
    pipe.incrby.assert_called_once_with("tpm", 10)
    assert result == [1, 10, True, True, 1]
    pipe.reset.assert_called_once()


def test_redis_batch_failure_is_unavailable_and_resets():
    client = MagicMock()
    pipe = client.pipeline.return_value
    pipe.execute.side_effect = redis.TimeoutError("slow")
    with pytest.raises(CounterStoreUnavailable):
        RedisCounterStore(client).batch().incr("rpm").execute()
    pipe.reset.assert_called_once()


# ---------------------------------------------------------------------------
# connect_counter_store
# ---------------------------------------------------------------------------

def test_connect_without_url_is_none():
    assert connect_counter_store("") is None
    assert connect_counter_store(None) is None


def test_connect_memory_url():
    assert isinstance(connect_counter_store("memory://"), MemoryCounterStore)


def test_connect_redis_url():
    with patch("core.counter_store.redis.Redis.from_url") as from_url:
        store = connect_counter_store("redis://localhost:6379/0")
    assert isinstance(store, RedisCounterStore)
    from_url.assert_called_once()
    assert from_url.call_args.kwargs["decode_responses"] is True
