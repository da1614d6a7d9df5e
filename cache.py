import fnmatch
import json
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Optional

import redis.asyncio as redis
from loguru import logger


DEFAULT_TTL_SECONDS = 120
REDIS_SOCKET_TIMEOUT_SEC = 2.0
MEMORY_SWEEP_INTERVAL_SEC = 60.0


def _json_default(obj):
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def _dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default)


# ── Contract ──────────────────────────────────────────────────────────────────


class BaseCache(ABC):
    """
    Best-effort key/value store with per-key expiration.

    Implementations never raise: a backend outage reads as a miss and
    writes become no-ops.
    """

    backend = "base"

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        ...

    async def close(self) -> None:
        return None


# ── Redis ─────────────────────────────────────────────────────────────────────


class RedisCache(BaseCache):
    backend = "redis"

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        if client is not None:
            self.redis = client
        else:
            self.redis = redis.from_url(
                redis_url or "redis://localhost:6379",
                decode_responses=True,
                socket_timeout=REDIS_SOCKET_TIMEOUT_SEC,
                socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SEC,
            )

    async def get(self, key: str) -> Optional[Any]:
        try:
            data = await self.redis.get(key)
            return json.loads(data) if data else None
        except Exception as e:
            logger.error(f"Redis get error for key {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        try:
            await self.redis.setex(key, ttl_seconds, _dumps(value))
        except Exception as e:
            logger.error(f"Redis set error for key {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except Exception as e:
            logger.error(f"Redis del error for key {key}: {e}")

    async def keys(self, pattern: str) -> list[str]:
        try:
            return list(await self.redis.keys(pattern))
        except Exception as e:
            logger.error(f"Redis keys error for pattern {pattern}: {e}")
            return []

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except Exception as e:
            logger.warning(f"Redis close error: {e}")


# ── In-process ────────────────────────────────────────────────────────────────


class MemoryCache(BaseCache):
    """Single-process TTL store. Values are stored serialized, like Redis."""

    backend = "memory"

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = MEMORY_SWEEP_INTERVAL_SEC,
    ):
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, data = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return json.loads(data)

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        try:
            data = _dumps(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Cache set error for key {key}: {e}")
            return
        now = self._clock()
        if now - self._last_sweep >= self._sweep_interval:
            self._sweep(now)
        self._entries[key] = (now + ttl_seconds, data)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
        self._last_sweep = now
        if expired:
            logger.debug(f"Evicted {len(expired)} expired cache entries")

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def keys(self, pattern: str) -> list[str]:
        now = self._clock()
        return [
            k for k, (expires_at, _) in self._entries.items()
            if expires_at > now and fnmatch.fnmatchcase(k, pattern)
        ]


def create_cache(redis_url: Optional[str]) -> BaseCache:
    if redis_url:
        logger.info("Using Redis cache")
        return RedisCache(redis_url)
    logger.info("REDIS_URL not set, using in-memory cache")
    return MemoryCache()
