"""
Security event stores.
"""

import threading
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from .models import SecurityEvent


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class SecurityEventStore(Protocol):
    """Append-only security event persistence."""

    async def append(self, event: SecurityEvent) -> None:
        ...

    async def query(self, start_time: Optional[datetime] = None,
                    end_time: Optional[datetime] = None) -> List[SecurityEvent]:
        ...


class InMemorySecurityEventStore:

    def __init__(self):
        self._events: List[SecurityEvent] = []
        self._lock = threading.Lock()

    async def append(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)

    async def query(self, start_time: Optional[datetime] = None,
                    end_time: Optional[datetime] = None) -> List[SecurityEvent]:
        """Events within ``[start_time, end_time]``, oldest first."""
        with self._lock:
            events = list(self._events)
        if start_time is not None:
            events = [e for e in events if _as_utc(e.timestamp) >= _as_utc(start_time)]
        if end_time is not None:
            events = [e for e in events if _as_utc(e.timestamp) <= _as_utc(end_time)]
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
