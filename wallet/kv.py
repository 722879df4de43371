"""Small TTL key-value layer for passcodes and attempt counters.

A single-process deployment can keep everything in memory; several instances
behind a balancer need the Redis implementation so they see the same codes.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import WatchError


class TTLStore(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        ...

    async def add(self, key: str, value: str, ttl: float | None = None) -> bool:
        """Set ``key`` only if it is absent; return whether it was set."""

    async def delete(self, key: str) -> None:
        ...

    async def incr(self, key: str, ttl: float | None = None) -> int:
        ...

    async def pop_if(self, key: str, expected: str) -> bool:
        """Delete ``key`` only while it still holds ``expected``."""

    async def close(self) -> None:
        ...


class InMemoryTTLStore:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _deadline(self, ttl: float | None) -> Optional[float]:
        if ttl is None:
            return None
        return self._clock() + max(0.0, ttl)

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        async with self._lock:
            self._data[key] = (value, self._deadline(ttl))

    async def add(self, key: str, value: str, ttl: float | None = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._deadline(ttl))
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def incr(self, key: str, ttl: float | None = None) -> int:
        async with self._lock:
            current = self._live(key)
            count = int(current or 0) + 1
            deadline = self._deadline(ttl) if ttl is not None else self._data.get(key, ("", None))[1]
            self._data[key] = (str(count), deadline)
            return count

    async def pop_if(self, key: str, expected: str) -> bool:
        async with self._lock:
            if self._live(key) != expected:
                return False
            del self._data[key]
            return True

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()


def _seconds(ttl: float | None) -> Optional[int]:
    if ttl is None:
        return None
    return max(1, math.ceil(ttl))


class RedisTTLStore:
    def __init__(self, url: str, *, namespace: str = "wallet:") -> None:
        self._url = url
        self._namespace = namespace
        self._redis: Optional[redis.Redis] = None

    async def _conn(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self._url, decode_responses=True)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def get(self, key: str) -> Optional[str]:
        client = await self._conn()
        return await client.get(self._key(key))

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        client = await self._conn()
        await client.set(self._key(key), value, ex=_seconds(ttl))

    async def add(self, key: str, value: str, ttl: float | None = None) -> bool:
        client = await self._conn()
        return bool(await client.set(self._key(key), value, ex=_seconds(ttl), nx=True))

    async def delete(self, key: str) -> None:
        client = await self._conn()
        await client.delete(self._key(key))

    async def incr(self, key: str, ttl: float | None = None) -> int:
        client = await self._conn()
        redis_key = self._key(key)
        pipe = client.pipeline()
        pipe.incr(redis_key)
        if ttl is not None:
            pipe.expire(redis_key, _seconds(ttl))
        results = await pipe.execute()
        return int(results[0])

    async def pop_if(self, key: str, expected: str) -> bool:
        client = await self._conn()
        redis_key = self._key(key)
        async with client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(redis_key)
                current = await pipe.get(redis_key)
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(redis_key)
                await pipe.execute()
                return True
            except WatchError:
                return False

    async def close(self) -> None:
        if self._redis is None:
            return
        await self._redis.aclose()
        self._redis = None


__all__ = ["InMemoryTTLStore", "RedisTTLStore", "TTLStore"]
