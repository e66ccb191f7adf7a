"""
Cache eviction strategies.

Every strategy tracks metadata for the keys it has seen and orders a set
of candidate keys for eviction. Keys the strategy has never seen sort
before tracked ones. All methods are safe to call from several threads.
"""

import itertools
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Type


class EvictionStrategy(ABC):
    """Base class for eviction strategies."""

    name: str = ""

    def __init__(self):
        self._lock = threading.Lock()
        self._evictions = 0

    def select_keys_to_evict(self, candidate_keys: Iterable[str], max_count: int) -> List[str]:
        """Pick up to ``max_count`` keys from ``candidate_keys``, best victims first."""
        if max_count <= 0:
            return []
        candidates = list(dict.fromkeys(candidate_keys))
        with self._lock:
            unknown = [key for key in candidates if not self._tracks(key)]
            known = [key for key in candidates if self._tracks(key)]
            known.sort(key=self._eviction_order)
            selected = (unknown + known)[:max_count]
            self._evictions += len(selected)
        return selected

    def record_access(self, key: str, timestamp: Optional[float] = None) -> None:
        pass

    def record_insert(self, key: str, timestamp: Optional[float] = None) -> None:
        self.record_access(key, timestamp)

    @abstractmethod
    def forget(self, key: str) -> None:
        ...

    @abstractmethod
    def _tracks(self, key: str) -> bool:
        ...

    @abstractmethod
    def _eviction_order(self, key: str) -> Any:
        """Sort key; lower sorts earlier and is evicted first. Called under the lock."""

    @abstractmethod
    def _tracked_count(self) -> int:
        ...

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "strategy": self.name,
                "tracked_keys": self._tracked_count(),
                "evictions_selected": self._evictions,
            }


class LRUStrategy(EvictionStrategy):
    """Least recently used first."""

    name = "LRU"

    def __init__(self):
        super().__init__()
        self._last_used: Dict[str, int] = {}
        self._clock = itertools.count()

    def record_access(self, key: str, timestamp: Optional[float] = None) -> None:
        with self._lock:
            self._last_used[key] = next(self._clock)

    def forget(self, key: str) -> None:
        with self._lock:
            self._last_used.pop(key, None)

    def _tracks(self, key: str) -> bool:
        return key in self._last_used

    def _eviction_order(self, key: str) -> Any:
        return self._last_used[key]

    def _tracked_count(self) -> int:
        return len(self._last_used)


class LFUStrategy(EvictionStrategy):
    """Least frequently used first; ties go to the key seen first."""

    name = "LFU"

    def __init__(self):
        super().__init__()
        self._counts: Dict[str, int] = {}
        self._first_seen: Dict[str, int] = {}
        self._clock = itertools.count()

    def record_access(self, key: str, timestamp: Optional[float] = None) -> None:
        with self._lock:
            if key not in self._counts:
                self._first_seen[key] = next(self._clock)
            self._counts[key] = self._counts.get(key, 0) + 1

    def forget(self, key: str) -> None:
        with self._lock:
            self._counts.pop(key, None)
            self._first_seen.pop(key, None)

    def _tracks(self, key: str) -> bool:
        return key in self._counts

    def _eviction_order(self, key: str) -> Any:
        return (self._counts[key], self._first_seen[key])

    def _tracked_count(self) -> int:
        return len(self._counts)


class FIFOStrategy(EvictionStrategy):
    """Oldest insertion first; reads do not change the order."""

    name = "FIFO"

    def __init__(self):
        super().__init__()
        self._inserted: Dict[str, int] = {}
        self._clock = itertools.count()

    def record_access(self, key: str, timestamp: Optional[float] = None) -> None:
        pass

    def record_insert(self, key: str, timestamp: Optional[float] = None) -> None:
        with self._lock:
            # Overwriting a key keeps its original position.
            if key not in self._inserted:
                self._inserted[key] = next(self._clock)

    def forget(self, key: str) -> None:
        with self._lock:
            self._inserted.pop(key, None)

    def _tracks(self, key: str) -> bool:
        return key in self._inserted

    def _eviction_order(self, key: str) -> Any:
        return self._inserted[key]

    def _tracked_count(self) -> int:
        return len(self._inserted)


class TTLStrategy(EvictionStrategy):
    """Expired keys first, then the oldest write."""

    name = "TTL"

    def __init__(self, default_ttl: float = 300):
        super().__init__()
        self.default_ttl = default_ttl
        self._written: Dict[str, float] = {}
        self._now = time.time

    def record_access(self, key: str, timestamp: Optional[float] = None) -> None:
        pass

    def record_insert(self, key: str, timestamp: Optional[float] = None) -> None:
        with self._lock:
            self._written[key] = timestamp if timestamp is not None else self._now()

    def forget(self, key: str) -> None:
        with self._lock:
            self._written.pop(key, None)

    def _tracks(self, key: str) -> bool:
        return key in self._written

    def _eviction_order(self, key: str) -> Any:
        written = self._written[key]
        expired = self._now() - written > self.default_ttl
        return (0 if expired else 1, written)

    def _tracked_count(self) -> int:
        return len(self._written)

    def stats(self) -> Dict[str, Any]:
        stats = super().stats()
        stats["default_ttl"] = self.default_ttl
        return stats


_STRATEGIES: Dict[str, Type[EvictionStrategy]] = {
    LRUStrategy.name: LRUStrategy,
    LFUStrategy.name: LFUStrategy,
    FIFOStrategy.name: FIFOStrategy,
    TTLStrategy.name: TTLStrategy,
}
_registry_lock = threading.Lock()


def register_strategy(name: str, strategy_cls: Type[EvictionStrategy]) -> None:
    with _registry_lock:
        _STRATEGIES[name.upper()] = strategy_cls


def available_strategies() -> List[str]:
    with _registry_lock:
        return sorted(_STRATEGIES)


def create_strategy(name: str, **kwargs) -> EvictionStrategy:
    """Instantiate a strategy by name (case-insensitive).

    Raises:
        ValueError: for an unknown strategy name.
    """
    with _registry_lock:
        strategy_cls = _STRATEGIES.get(name.upper())
    if strategy_cls is None:
        raise ValueError(f"Unknown eviction strategy: {name}")
    if strategy_cls is TTLStrategy:
        return TTLStrategy(**kwargs)
    kwargs.pop("default_ttl", None)
    return strategy_cls(**kwargs)
