from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from functools import lru_cache
from typing import Protocol

from app.config import settings


@dataclass(frozen=True)
class WindowEntry:
    report_id: int
    printed_at: datetime


class BatchWindowStore(Protocol):
    def get(self, key: str) -> WindowEntry | None: ...

    def put(self, key: str, entry: WindowEntry) -> None: ...

    def discard(self, key: str) -> None: ...


def window_key(*, venue_id: str, relay_id: str | None, report_date: date) -> str:
    return f'{venue_id}|{relay_id or "-"}|{report_date.isoformat()}'


class InMemoryBatchWindowStore:
    """Process-local TTL map of open batching windows.

    A hint only: the database stays the source of truth, so instances that
    do not share this store still coalesce correctly through the fallback query.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError('Window TTL must be greater than zero')
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[WindowEntry, float]] = {}

    def get(self, key: str) -> WindowEntry | None:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            entry, expires_at = item
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry

    def put(self, key: str, entry: WindowEntry) -> None:
        with self._lock:
            self._prune_locked()
            self._entries[key] = (entry, self._clock() + self.ttl_seconds)

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._prune_locked()
            return len(self._entries)

    def _prune_locked(self) -> None:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]


@lru_cache(maxsize=1)
def get_window_store() -> InMemoryBatchWindowStore:
    return InMemoryBatchWindowStore(ttl_seconds=settings.batch_window_ttl_seconds)
