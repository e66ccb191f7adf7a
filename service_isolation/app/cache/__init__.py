"""
Isolation-aware caching.

- keys: Partition key generation and parsing.
- strategies: LRU, LFU, FIFO and TTL eviction with a name registry.
- stores: In-memory and Redis-backed stores.
- isolated_cache: Bounded cache keyed by isolation context.
"""

from .isolated_cache import IsolatedCache
from .keys import ParsedCacheKey, generate_cache_key, generate_cache_pattern, generate_scope_pattern, parse_cache_key
from .stores import CacheStore, InMemoryCacheStore, RedisCacheStore
from .strategies import (
    EvictionStrategy,
    FIFOStrategy,
    LFUStrategy,
    LRUStrategy,
    TTLStrategy,
    available_strategies,
    create_strategy,
    register_strategy,
)

__all__ = [
    "IsolatedCache",
    "ParsedCacheKey",
    "generate_cache_key",
    "generate_cache_pattern",
    "generate_scope_pattern",
    "parse_cache_key",
    "CacheStore",
    "InMemoryCacheStore",
    "RedisCacheStore",
    "EvictionStrategy",
    "FIFOStrategy",
    "LFUStrategy",
    "LRUStrategy",
    "TTLStrategy",
    "available_strategies",
    "create_strategy",
    "register_strategy",
]
