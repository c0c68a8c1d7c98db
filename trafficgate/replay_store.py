"""
Replay Store - Counts fingerprint sightings within a time window.

The fingerprint analyzer depends only on the HashCounter protocol. Two
implementations are provided: an in-process counter for single-worker
deployments and tests, and a Redis counter (INCR + EXPIRE NX in MULTI) shared by
all workers.
"""
import threading
import time
from typing import Callable, Optional, Protocol, runtime_checkable

from loguru import logger
from redis import asyncio as redis_async

DEFAULT_WINDOW_SECONDS = 3600
KEY_PREFIX = "trafficgate:fp:"


@runtime_checkable
class HashCounter(Protocol):
    async def increment(self, key: str) -> int:
        """Record one sighting and return the count in the current window"""
        ...

    async def get(self, key: str) -> int:
        """Count in the current window without recording"""
        ...


class InMemoryHashCounter:
    """
    Fixed-window counter guarded by a lock.

    Holds at most max_keys fingerprints. Over the cap, expired windows are
    dropped first, then the least recently seen keys.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        max_keys: int = 100_000,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._window = window_seconds
        self._max_keys = max_keys
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        # key -> (count, window expiry), least recently seen first
        self._counts: dict[str, tuple[int, float]] = {}

    def _purge(self, now: float) -> None:
        expired = [k for k, (_, exp) in self._counts.items() if exp <= now]
        for k in expired:
            del self._counts[k]

    async def increment(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            count, expiry = self._counts.pop(key, (0, 0.0))
            if expiry <= now:
                count, expiry = 0, now + self._window
            count += 1
            self._counts[key] = (count, expiry)
            if len(self._counts) > self._max_keys:
                self._purge(now)
                while len(self._counts) > self._max_keys:
                    del self._counts[next(iter(self._counts))]
            return count

    async def get(self, key: str) -> int:
        with self._lock:
            count, expiry = self._counts.get(key, (0, 0.0))
            return count if expiry > self._clock() else 0

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()

    def __len__(self) -> int:
        return len(self._counts)


class RedisHashCounter:
    """
    Fixed-window counter in Redis.

    INCR and EXPIRE NX run in one transaction: the first sighting starts the
    window and later sightings leave the TTL alone. EXPIRE NX needs Redis 7+.
    """

    def __init__(
        self,
        client: "redis_async.Redis",
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        prefix: str = KEY_PREFIX,
    ):
        self._client = client
        self._window = int(window_seconds)
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, window_seconds: int = DEFAULT_WINDOW_SECONDS) -> "RedisHashCounter":
        return cls(redis_async.from_url(url), window_seconds=window_seconds)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def increment(self, key: str) -> int:
        k = self._key(key)
        # one MULTI, so a counted key always carries its window TTL
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(k)
            pipe.expire(k, self._window, nx=True)
            count, _ = await pipe.execute()
        return int(count)

    async def get(self, key: str) -> int:
        value = await self._client.get(self._key(key))
        return int(value) if value is not None else 0

    async def close(self) -> None:
        await self._client.aclose()


def create_hash_counter(redis_url: Optional[str], window_seconds: int = DEFAULT_WINDOW_SECONDS) -> HashCounter:
    """Redis counter when a URL is configured, else in-memory"""
    if redis_url:
        logger.info(f"Replay store: redis ({redis_url.split('@')[-1]})")
        return RedisHashCounter.from_url(redis_url, window_seconds=window_seconds)
    logger.info("Replay store: in-memory")
    return InMemoryHashCounter(window_seconds=window_seconds)
