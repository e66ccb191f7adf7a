"""
Partitioned cache with bounded size.

Keys are derived from the caller's isolation context so one tenant can
never read another's entries. The cache tracks the keys it wrote; once a
write pushes the tracked size above ``max_size`` the eviction strategy
picks exactly the excess and they are deleted from the store.
"""

import asyncio
import threading
import time
from typing import Any, Dict, List, Optional

from isolation_shared.logging import get_logger
from isolation_shared.metrics import MetricsCollector
from ..context.models import IsolationContext
from .keys import generate_cache_key, generate_cache_pattern, generate_scope_pattern
from .stores import CacheStore
from .strategies import EvictionStrategy, LRUStrategy


class IsolatedCache:
    """Isolation-aware cache over a ``CacheStore``."""

    def __init__(
        self,
        store: CacheStore,
        strategy: Optional[EvictionStrategy] = None,
        max_size: int = 1000,
        default_ttl: int = 300,
        prefix: str = "",
        timeout: float = 2.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.logger = get_logger("isolation.cache")
        self.store = store
        self.strategy = strategy or LRUStrategy()
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.prefix = prefix
        self.timeout = timeout
        self.metrics = metrics
        # key -> expiry timestamp
        self._tracked: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {"hits": 0, "misses": 0, "evictions": 0, "errors": 0}
        self._now = time.time

    def key_for(self, ctx: IsolationContext, namespace: str, suffix: str) -> str:
        return generate_cache_key(namespace, suffix, ctx, self.prefix)

    async def _call(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    async def get(self, ctx: IsolationContext, namespace: str, suffix: str) -> Optional[Any]:
        """Cached value, or None on a miss or store failure."""
        key = self.key_for(ctx, namespace, suffix)
        try:
            value = await self._call(self.store.get(key))
        except Exception as e:
            self._count("errors")
            self.logger.warning("Cache read failed", key=key, error=str(e))
            value = None

        if value is None:
            self._count("misses")
            if self.metrics:
                self.metrics.increment_counter("cache_misses_total", namespace=namespace)
            return None

        self._count("hits")
        self.strategy.record_access(key, self._now())
        if self.metrics:
            self.metrics.increment_counter("cache_hits_total", namespace=namespace)
        return value

    async def set(
        self,
        ctx: IsolationContext,
        namespace: str,
        suffix: str,
        value: Any,
        ttl: Optional[int] = None,
    ) -> bool:
        """Write a value; returns False when the store write fails."""
        key = self.key_for(ctx, namespace, suffix)
        ttl = self.default_ttl if ttl is None else ttl
        try:
            await self._call(self.store.set(key, value, ttl))
        except Exception as e:
            self._count("errors")
            self.logger.warning("Cache write failed", key=key, error=str(e))
            return False

        now = self._now()
        with self._lock:
            self._tracked[key] = now + ttl if ttl and ttl > 0 else float("inf")
        self.strategy.record_insert(key, now)

        await self._enforce_bound()
        return True

    async def delete(self, ctx: IsolationContext, namespace: str, suffix: str) -> bool:
        key = self.key_for(ctx, namespace, suffix)
        self._untrack(key)
        try:
            return bool(await self._call(self.store.delete(key)))
        except Exception as e:
            self._count("errors")
            self.logger.warning("Cache delete failed", key=key, error=str(e))
            return False

    async def exists(self, ctx: IsolationContext, namespace: str, suffix: str) -> bool:
        key = self.key_for(ctx, namespace, suffix)
        try:
            return await self._call(self.store.get(key)) is not None
        except Exception as e:
            self._count("errors")
            self.logger.warning("Cache exists check failed", key=key, error=str(e))
            return False

    async def invalidate(self, ctx: IsolationContext, namespace: str) -> int:
        """Delete every key of ``namespace`` in the context's partition."""
        return await self._delete_pattern(generate_cache_pattern(namespace, "*", ctx, self.prefix))

    async def invalidate_scope(self, ctx: IsolationContext) -> int:
        """Delete every key in the context's partition and those nested below it."""
        return await self._delete_pattern(generate_scope_pattern(ctx, self.prefix))

    async def _delete_pattern(self, pattern: str) -> int:
        try:
            keys = await self._call(self.store.keys(pattern))
        except Exception as e:
            self._count("errors")
            self.logger.warning("Cache key listing failed", pattern=pattern, error=str(e))
            return 0

        deleted = 0
        for key in keys:
            self._untrack(key)
            try:
                if await self._call(self.store.delete(key)):
                    deleted += 1
            except Exception as e:
                self._count("errors")
                self.logger.warning("Cache delete failed", key=key, error=str(e))

        if deleted:
            self.logger.info("Cache invalidated", pattern=pattern, count=deleted)
        return deleted

    async def sweep(self, now: Optional[float] = None) -> int:
        """Drop entries past their own ttl and enforce the size bound.

        The eviction strategy only orders victims once the bound is breached.

        Returns the number of keys removed.
        """
        now = now if now is not None else self._now()
        with self._lock:
            expired = [key for key, expires_at in self._tracked.items() if expires_at <= now]

        for key in expired:
            self._untrack(key)
            try:
                await self._call(self.store.delete(key))
            except Exception as e:
                self._count("errors")
                self.logger.warning("Cache sweep delete failed", key=key, error=str(e))

        evicted = await self._enforce_bound()
        if expired or evicted:
            self.logger.debug("Cache swept", expired=len(expired), evicted=evicted)
        return len(expired) + evicted

    async def _enforce_bound(self) -> int:
        with self._lock:
            excess = len(self._tracked) - self.max_size
            candidates = list(self._tracked)
        if excess <= 0:
            return 0

        victims = self.strategy.select_keys_to_evict(candidates, excess)
        for key in victims:
            self._untrack(key)
            try:
                await self._call(self.store.delete(key))
            except Exception as e:
                self._count("errors")
                self.logger.warning("Cache eviction delete failed", key=key, error=str(e))

        self._count("evictions", len(victims))
        if self.metrics and victims:
            self.metrics.increment_counter("cache_evictions_total", len(victims), strategy=self.strategy.name)
        return len(victims)

    def _count(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[counter] += amount

    def _untrack(self, key: str) -> None:
        with self._lock:
            self._tracked.pop(key, None)
        self.strategy.forget(key)

    def tracked_keys(self) -> List[str]:
        with self._lock:
            return list(self._tracked)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._tracked)
            counts = dict(self._counts)
        lookups = counts["hits"] + counts["misses"]
        return {
            "size": size,
            "max_size": self.max_size,
            "hits": counts["hits"],
            "misses": counts["misses"],
            "hit_rate": counts["hits"] / lookups if lookups else 0.0,
            "evictions": counts["evictions"],
            "errors": counts["errors"],
            "strategy": self.strategy.stats(),
        }
