"""
Shared stores backing the rate limiter and the ban registry.

Provides:
- WindowCounterStore: atomic increment-within-window counters
- TtlKeyStore: keys that expire on their own
- RedisStore: both ports on Redis (shared across worker processes)
- InMemoryStore: both ports in-process, for tests and single-worker runs

Counters and bans must be visible to every worker touching the same
upstream resource class, so production deployments set REDIS_URL. The
in-memory store only coordinates tasks running in one process.
"""

import logging
import math
import os
import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

# Increment KEYS[1] unless it already reached ARGV[1] (ceiling). The first
# admitted call opens the window by setting the expiry to ARGV[2] ms.
# Returns {admitted (0/1), remaining window ms}.
_INCREMENT_WITHIN_WINDOW = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local ceiling = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

if current >= ceiling then
    local ttl = redis.call('PTTL', KEYS[1])
    if ttl < 0 then
        redis.call('PEXPIRE', KEYS[1], window_ms)
        ttl = window_ms
    end
    return {0, ttl}
end

current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('PEXPIRE', KEYS[1], window_ms)
end
return {1, redis.call('PTTL', KEYS[1])}
"""


class WindowCounterStore(ABC):
    """Port for fixed-window call counters."""

    @abstractmethod
    def increment_within_window(
        self,
        key: str,
        ceiling: int,
        window_seconds: float,
    ) -> Tuple[bool, float]:
        """
        Count one call against `key` unless the window is full.

        Returns:
            (admitted, seconds until the current window closes)
        """
        pass


class TtlKeyStore(ABC):
    """Port for self-expiring string keys."""

    @abstractmethod
    def set_with_ttl(self, key: str, value: str, ttl_seconds: float) -> None:
        pass

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass


class InMemoryStore(WindowCounterStore, TtlKeyStore):
    """
    In-process store with a single lock guarding all keys.

    Expired entries are dropped lazily when they are next looked up.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = Lock()
        self._windows: Dict[str, Tuple[int, float, float]] = {}
        self._values: Dict[str, Tuple[str, float]] = {}

    def increment_within_window(
        self,
        key: str,
        ceiling: int,
        window_seconds: float,
    ) -> Tuple[bool, float]:
        with self._lock:
            now = self._clock()
            count, started_at, duration = self._windows.get(key, (0, now, window_seconds))

            if now >= started_at + duration:
                count, started_at, duration = 0, now, window_seconds

            remaining = max(started_at + duration - now, 0.0)
            if count >= ceiling:
                return False, remaining

            self._windows[key] = (count + 1, started_at, duration)
            return True, remaining

    def set_with_ttl(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            self._values[key] = (value, self._clock() + ttl_seconds)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._values[key]
                return None
            return value

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()
            self._values.clear()


class RedisStore(WindowCounterStore, TtlKeyStore):
    """
    Redis-backed store shared by every worker process.

    Errors from Redis propagate: a limiter that silently admits every call
    when Redis is down would defeat the upstream rate limit.
    """

    def __init__(self, client: "redis.Redis"):
        self._redis = client
        self._increment = client.register_script(_INCREMENT_WITHIN_WINDOW)

    def increment_within_window(
        self,
        key: str,
        ceiling: int,
        window_seconds: float,
    ) -> Tuple[bool, float]:
        window_ms = max(int(window_seconds * 1000), 1)
        admitted, ttl_ms = self._increment(keys=[key], args=[ceiling, window_ms])
        return bool(int(admitted)), max(int(ttl_ms), 0) / 1000.0

    def set_with_ttl(self, key: str, value: str, ttl_seconds: float) -> None:
        self._redis.setex(key, max(int(math.ceil(ttl_seconds)), 1), value)

    def get(self, key: str) -> Optional[str]:
        value = self._redis.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value


class RedisClient:
    """
    Connects to REDIS_URL once per process.

    `store` is None when Redis is not configured or the initial ping fails.
    """

    _instance: Optional["RedisClient"] = None
    _lock = Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._redis: Optional[redis.Redis] = None
        self._connect()
        self._initialized = True

    def _connect(self) -> None:
        redis_url = os.getenv("REDIS_URL")
        if not redis_url:
            logger.info("REDIS_URL not configured - sync coordination is process-local")
            return

        try:
            client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            client.ping()
            self._redis = client
            logger.info("Redis connection established for sync coordination")
        except redis.RedisError as e:
            logger.warning(
                f"Redis connection failed: {e} - sync coordination is process-local"
            )

    @property
    def available(self) -> bool:
        return self._redis is not None

    @property
    def client(self) -> Optional["redis.Redis"]:
        return self._redis


_store: Optional[WindowCounterStore] = None
_store_lock = Lock()


def get_shared_store():
    """
    Return the process-wide store: Redis when reachable, else in-memory.

    The returned object implements both WindowCounterStore and TtlKeyStore.
    """
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                redis_client = RedisClient()
                if redis_client.available:
                    _store = RedisStore(redis_client.client)
                else:
                    _store = InMemoryStore()
    return _store


def reset_shared_store() -> None:
    """Reset singletons (for tests only)."""
    global _store
    _store = None
    RedisClient._instance = None
