from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as redis
from redis.exceptions import LockError

from core.config import RedisConfig
from core.errors import ConflictError

LOGGER = logging.getLogger(__name__)


class LockTimeout(Exception):
    """Raised when a named lock cannot be acquired in time."""


class CacheBackend(Protocol):
    async def get(self, key: str) -> Any: ...
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...
    async def delete(self, key: str) -> None: ...
    async def incr(self, key: str, ttl: int | None = None) -> int: ...
    def lock(self, key: str, timeout: float) -> Any: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class _MemoryValue:
    value: Any
    expires_at: float | None


class MemoryCache(CacheBackend):
    def __init__(self) -> None:
        self._store: dict[str, _MemoryValue] = {}
        self._lock = asyncio.Lock()
        self._named_locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    def _is_expired(self, entry: _MemoryValue) -> bool:
        if entry.expires_at is None:
            return False
        return time.time() >= entry.expires_at

    async def get(self, key: str) -> Any:
        async with self._lock:
            entry = self._store.get(key)
            if not entry:
                return None
            if self._is_expired(entry):
                self._store.pop(key, None)
                return None
            return entry.value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        async with self._lock:
            expires_at = time.time() + ttl if ttl else None
            self._store[key] = _MemoryValue(value=value, expires_at=expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def incr(self, key: str, ttl: int | None = None) -> int:
        async with self._lock:
            entry = self._store.get(key)
            now = time.time()
            if not entry or self._is_expired(entry):
                expires_at = now + ttl if ttl else None
                self._store[key] = _MemoryValue(value=1, expires_at=expires_at)
                return 1
            new_val = int(entry.value) + 1
            self._store[key] = _MemoryValue(value=new_val, expires_at=entry.expires_at)
            return new_val

    @asynccontextmanager
    async def lock(self, key: str, timeout: float) -> AsyncIterator[None]:
        named = self._named_locks.setdefault(key, asyncio.Lock())
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(named.acquire(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise LockTimeout(key) from exc
            try:
                yield
            finally:
                named.release()
        finally:
            # Forget the lock once nobody holds or waits on it.
            remaining = self._lock_holders.get(key, 1) - 1
            if remaining:
                self._lock_holders[key] = remaining
            else:
                self._lock_holders.pop(key, None)
                self._named_locks.pop(key, None)

    async def close(self) -> None:
        self._store.clear()
        self._named_locks.clear()
        self._lock_holders.clear()


class RedisCache(CacheBackend):
    def __init__(self, url: str) -> None:
        self._client = redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Any:
        return await self._client.get(key)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        if ttl:
            await self._client.set(key, value, ex=ttl)
        else:
            await self._client.set(key, value)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def incr(self, key: str, ttl: int | None = None) -> int:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            if ttl:
                pipe.expire(key, ttl)
            result = await pipe.execute()
        return int(result[0])

    @asynccontextmanager
    async def lock(self, key: str, timeout: float) -> AsyncIterator[None]:
        # The lease outlives the wait so a slow holder is not preempted mid-write.
        redis_lock = self._client.lock(f"lock:{key}", timeout=max(timeout * 3, 30), blocking_timeout=timeout)
        acquired = await redis_lock.acquire()
        if not acquired:
            raise LockTimeout(key)
        try:
            yield
        finally:
            try:
                await redis_lock.release()
            except LockError:
                LOGGER.warning("Lock expired before release. key=%s", key)

    async def close(self) -> None:
        await self._client.aclose()


async def build_cache(config: RedisConfig) -> CacheBackend:
    if config.enabled:
        return RedisCache(config.url)
    return MemoryCache()


@asynccontextmanager
async def hold_lock(cache: CacheBackend, key: str, timeout: float) -> AsyncIterator[None]:
    """Serialize work on ``key``; a timed-out wait surfaces as a retryable conflict."""
    try:
        async with cache.lock(key, timeout):
            yield
    except LockTimeout as exc:
        raise ConflictError("The record is being modified. Please retry.", retryable=True) from exc
