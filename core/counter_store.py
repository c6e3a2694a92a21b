"""Shared counter and waitlist store used by admission control.

Two backends expose the same small command set (get, incr, incrby, expire,
rpush, lrem) plus batch(), which queues commands and applies them as one
indivisible unit on execute():

    MemoryCounterStore  - process-local, guarded by a lock
    RedisCounterStore   - redis-py, batches run as MULTI/EXEC

Any backend failure surfaces as CounterStoreUnavailable so the admission
controller can degrade instead of blocking.
"""

import logging
import threading
import time

import redis

from core.errors import CounterStoreUnavailable

logger = logging.getLogger(__name__)


class MemoryCounterStore:
    """In-process store for single-instance deployments and tests."""

    def __init__(self, clock=None):
        self._clock = clock or time.time
        self._lock = threading.RLock()
        self._values = {}
        self._lists = {}
        self._expiry = {}

    # -- internal ---------------------------------------------------------

    def _purge(self, key):
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._values.pop(key, None)
            self._lists.pop(key, None)
            self._expiry.pop(key, None)

    # -- commands ---------------------------------------------------------

    def get(self, key):
        with self._lock:
            self._purge(key)
            value = self._values.get(key)
            return None if value is None else str(value)

    def incr(self, key):
        return self.incrby(key, 1)

    def incrby(self, key, amount):
        with self._lock:
            self._purge(key)
            self._values[key] = int(self._values.get(key, 0)) + int(amount)
            return self._values[key]

    def expire(self, key, seconds):
        with self._lock:
            self._purge(key)
            if key not in self._values and key not in self._lists:
                return False
            self._expiry[key] = self._clock() + seconds
            return True

    def rpush(self, key, value):
        with self._lock:
            self._purge(key)
            items = self._lists.setdefault(key, [])
            items.append(value)
            return len(items)

    def lrem(self, key, count, value):
        """Remove up to `count` occurrences of value (0 = all), head first."""
        with self._lock:
            self._purge(key)
            items = self._lists.get(key, [])
            removed = 0
            kept = []
            for item in items:
                if item == value and (count == 0 or removed < count):
                    removed += 1
                    continue
                kept.append(item)
            if kept:
                self._lists[key] = kept
            else:
                self._lists.pop(key, None)
            return removed

    def lrange(self, key):
        with self._lock:
            self._purge(key)
            return list(self._lists.get(key, []))

    def batch(self):
        return _MemoryBatch(self)


class _MemoryBatch:
    """Queued commands applied under the store lock."""

    def __init__(self, store):
        self._store = store
        self._ops = []

    def __getattr__(self, name):
        if name not in ("get", "incr", "incrby", "expire", "rpush", "lrem"):
            raise AttributeError(name)

        def queue(*args):
            self._ops.append((name, args))
            return self
        return queue

    def execute(self):
        with self._store._lock:
            results = [getattr(self._store, name)(*args) for name, args in self._ops]
        self._ops = []
        return results


class RedisCounterStore:
    """redis-py backed store shared by every orchestrator instance."""

    def __init__(self, client):
        self._client = client

    @classmethod
    def from_url(cls, url, connect_timeout=3.0):
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            socket_timeout=connect_timeout,
        )
        return cls(client)

    def _call(self, command, *args):
        try:
            return getattr(self._client, command)(*args)
        except redis.RedisError as e:
            raise CounterStoreUnavailable(f"redis {command} failed: {e}") from e

    def get(self, key):
        return self._call("get", key)

    def incr(self, key):
        return self._call("incr", key)

    def incrby(self, key, amount):
        return self._call("incrby", key, amount)

    def expire(self, key, seconds):
        return self._call("expire", key, seconds)

    def rpush(self, key, value):
        return self._call("rpush", key, value)

    def lrem(self, key, count, value):
        return self._call("lrem", key, count, value)

    def batch(self):
        return _RedisBatch(self._client.pipeline(transaction=True))


class _RedisBatch:
    def __init__(self, pipeline):
        self._pipeline = pipeline

    def __getattr__(self, name):
        if name not in ("get", "incr", "incrby", "expire", "rpush", "lrem"):
            raise AttributeError(name)

        def queue(*args):
            getattr(self._pipeline, name)(*args)
            return self
        return queue

    def execute(self):
        try:
            return self._pipeline.execute()
        except redis.RedisError as e:
            raise CounterStoreUnavailable(f"redis transaction failed: {e}") from e
        finally:
            self._pipeline.reset()


def connect_counter_store(url):
    """Build a store from a URL. Returns None when no URL is configured.

    "memory://" selects the in-process backend; anything else goes to redis.
    """
    if not url:
        return None
    if url.startswith("memory://"):
        return MemoryCounterStore()
    logger.info("Using redis counter store at %s", url.split("@")[-1])
    return RedisCounterStore.from_url(url)
