"""
Cache stores behind the isolated cache.
"""

import fnmatch
import json
import threading
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis

from isolation_shared.errors import ServiceError
from isolation_shared.logging import get_logger


class CacheStore(Protocol):
    """Key-value store with per-key TTL and glob key listing."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ttl: int) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def keys(self, pattern: str) -> List[str]:
        ...


class InMemoryCacheStore:
    """Process-local store; expired entries are dropped lazily."""

    def __init__(self):
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._now = time.time

    def _live(self, key: str) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._now():
            del self._data[key]
            return False
        return True

    async def get(self, key: str) -> Optional[Any]:
        with self._lock:
            if not self._live(key):
                return None
            return self._data[key][0]

    async def set(self, key: str, value: Any, ttl: int) -> None:
        expires_at = self._now() + ttl if ttl and ttl > 0 else None
        with self._lock:
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    async def keys(self, pattern: str) -> List[str]:
        with self._lock:
            return [key for key in list(self._data) if self._live(key) and fnmatch.fnmatchcase(key, pattern)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisCacheStore:
    """Redis-backed store with JSON values."""

    def __init__(self, redis_url: str = "redis://localhost:6379/0", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.logger = get_logger("isolation.cache.redis")
        self.redis: Optional[redis.Redis] = client

    async def start(self):
        """Connect to Redis."""
        if self.redis is not None:
            return
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            await self.redis.ping()

            self.logger.info("Redis cache store started")

        except Exception as e:
            self.logger.error("Failed to start Redis cache store", error=str(e))
            raise ServiceError("Failed to connect to Redis", {"error": str(e)})

    async def stop(self):
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis cache store stopped")

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise ServiceError("Redis cache store is not started")
        return self.redis

    async def get(self, key: str) -> Optional[Any]:
        cached_data = await self._client().get(key)
        if cached_data is None:
            return None
        return json.loads(cached_data)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        payload = json.dumps(value)
        if ttl and ttl > 0:
            await self._client().setex(key, int(ttl), payload)
        else:
            await self._client().set(key, payload)

    async def delete(self, key: str) -> bool:
        return bool(await self._client().delete(key))

    async def keys(self, pattern: str) -> List[str]:
        return [k.decode() if isinstance(k, bytes) else k for k in await self._client().keys(pattern)]

    async def health_check(self) -> bool:
        try:
            await self._client().ping()
            return True
        except Exception:
            return False
