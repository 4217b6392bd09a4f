"""Key-value stores holding the serialized primary-store session."""

from __future__ import annotations

import time
from typing import Optional, Protocol

from redis.asyncio import Redis
import structlog

LOGGER = structlog.get_logger("backfill.session_store")


class SessionStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RedisSessionStore:
    """Session entries kept in Redis with a native expiry."""

    def __init__(self, redis: Redis):
        self._redis = redis

    async def get(self, key: str) -> Optional[str]:
        value = await self._redis.get(key)
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value or None

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("session_store_unreachable", error=str(exc))
            return False

    async def close(self) -> None:
        await self._redis.aclose()


class InMemorySessionStore:
    """Per-process store used when no Redis URL is configured."""

    def __init__(self, clock=time.monotonic):
        self._entries: dict[str, tuple[str, float]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value or None

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._entries.clear()
