"""
Short-lived memoization of computed availability.

Entries are keyed by the date range the result depends on plus the sorted
service set. Invalidation drops every entry whose range intersects the
mutated range. Values must be immutable; readers get the stored object as is.

A computation that read the store before an intersecting invalidation must not
repopulate the cache afterwards. Callers take `generation()` before reading the
store and pass it to `put`; the write is dropped when any invalidation recorded
since then touches the entry's range.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from app.availability.slots import DateRange


logger = logging.getLogger("bookingengine.availability.cache")

INVALIDATION_HISTORY = 1024


@dataclass(frozen=True)
class CacheKey:
    date_range: DateRange
    services: tuple[str, ...] = ()
    scope: Hashable = None


@dataclass(frozen=True)
class CacheEntry:
    key: CacheKey
    value: Any
    stored_at: float
    ttl_seconds: float

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl_seconds


class AvailabilityCache:
    def __init__(
        self,
        default_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        enabled: bool = True,
    ):
        self.default_ttl_seconds = default_ttl_seconds
        self.clock = clock
        self.enabled = enabled
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._generation = 0
        self._invalidations: deque[tuple[int, DateRange | None]] = deque(maxlen=INVALIDATION_HISTORY)
        self._lock = threading.Lock()

    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: CacheKey) -> CacheEntry | None:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not entry.is_fresh(self.clock()):
                del self._entries[key]
                return None
            return entry

    def put(
        self,
        key: CacheKey,
        value: Any,
        ttl_seconds: float | None = None,
        generation: int | None = None,
    ) -> bool:
        """Store value unless an intersecting invalidation happened after generation."""
        if not self.enabled:
            return False
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return False
        with self._lock:
            if generation is not None and self._invalidated_since(key.date_range, generation):
                logger.debug("Dropped stale availability result for %s", key.date_range)
                return False
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                stored_at=self.clock(),
                ttl_seconds=ttl,
            )
        return True

    def _invalidated_since(self, date_range: DateRange, generation: int) -> bool:
        if generation >= self._generation:
            return False
        if not self._invalidations or self._invalidations[0][0] > generation + 1:
            # history no longer reaches back that far
            return True
        return any(
            gen > generation and (mutated is None or mutated.intersects(date_range))
            for gen, mutated in self._invalidations
        )

    def invalidate(self, date_range: DateRange) -> int:
        with self._lock:
            self._generation += 1
            self._invalidations.append((self._generation, date_range))
            stale = [key for key in self._entries if key.date_range.intersects(date_range)]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.info(
                "Invalidated %s availability cache entries for %s..%s",
                len(stale),
                date_range.start,
                date_range.end,
            )
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._invalidations.append((self._generation, None))
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
