"""Size- and time-bounded in-process cache for session records.

Two independent eviction triggers:

* TTL sweep: once ``now > valid_until`` the whole cache is cleared and a new
  window starts. This is a single deadline for the cache, not per entry.
* Size pressure: when an insert would exceed ``max_size``, entries whose own
  ``expires_at`` has passed are dropped first, then entries are evicted in
  insertion order (oldest first) until the new one fits. This is FIFO, not
  LRU: reads do not refresh an entry's position.

A size-pressure eviction never moves ``valid_until`` and a TTL sweep is never
started because of size.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Generic, Hashable, Optional, TypeVar

from warden.logging import get_logger
from warden.storage.models import Session, session_size, utcnow

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class _CacheEntry(Generic[V]):
    value: V
    size: int


def _session_expiry(value: Session) -> Optional[datetime]:
    return value.expires_at


class BoundedCache(Generic[K, V]):
    """Thread-safe cache enforcing a byte budget and an optional TTL window.

    All bookkeeping runs under one lock per instance; callers must not hold
    that lock across I/O (the cache never calls out while holding it).
    """

    def __init__(
        self,
        max_size: int,
        ttl: Optional[timedelta] = None,
        *,
        sizer: Callable[[V], int] = session_size,
        expiry: Callable[[V], Optional[datetime]] = _session_expiry,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl = ttl
        self._sizer = sizer
        self._expiry = expiry
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[K, _CacheEntry[V]]" = OrderedDict()
        self._current_size = 0
        self._valid_until: Optional[datetime] = (
            clock() + ttl if ttl is not None else None
        )

    @property
    def current_size(self) -> int:
        with self._lock:
            return self._current_size

    @property
    def valid_until(self) -> Optional[datetime]:
        with self._lock:
            return self._valid_until

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def keys(self) -> list[K]:
        """Keys in insertion order, oldest first."""
        with self._lock:
            return list(self._entries.keys())

    def get(self, key: K) -> Optional[V]:
        """Return the cached value, dropping it if its own expiry has passed."""
        with self._lock:
            now = self._clock()
            self._sweep_if_stale(now)
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._is_expired(entry.value, now):
                self._remove(key)
                return None
            return entry.value

    def put(self, key: K, value: V) -> bool:
        """Insert or replace ``key``.

        Returns ``False`` without touching the cache, including any current
        value under ``key``, when the value alone is larger than the budget.
        """
        size = self._sizer(value)
        with self._lock:
            now = self._clock()
            self._sweep_if_stale(now)
            if size > self.max_size:
                logger.warning(
                    "cache_entry_too_large", size=size, max_size=self.max_size
                )
                return False
            if key in self._entries:
                self._remove(key)
            if self._current_size + size > self.max_size:
                self._purge_expired(now)
            evicted = 0
            while self._current_size + size > self.max_size and self._entries:
                oldest = next(iter(self._entries))
                self._remove(oldest)
                evicted += 1
            if evicted:
                logger.debug(
                    "cache_evicted", count=evicted, current_size=self._current_size
                )
            self._entries[key] = _CacheEntry(value=value, size=size)
            self._current_size += size
            return True

    def delete(self, key: K) -> None:
        with self._lock:
            self._sweep_if_stale(self._clock())
            self._remove(key)

    def purge_expired(self) -> int:
        """Drop every entry whose own expiry has passed; returns the count."""
        with self._lock:
            now = self._clock()
            self._sweep_if_stale(now)
            return self._purge_expired(now)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._current_size = 0

    # Helpers below expect the lock to be held.

    def _sweep_if_stale(self, now: datetime) -> None:
        if self._valid_until is None or now <= self._valid_until:
            return
        if self._entries:
            logger.debug("cache_ttl_sweep", cleared=len(self._entries))
        self._entries.clear()
        self._current_size = 0
        self._valid_until = now + self.ttl

    def _is_expired(self, value: V, now: datetime) -> bool:
        expires_at = self._expiry(value)
        return expires_at is not None and now > expires_at

    def _purge_expired(self, now: datetime) -> int:
        stale = [
            key for key, entry in self._entries.items()
            if self._is_expired(entry.value, now)
        ]
        for key in stale:
            self._remove(key)
        return len(stale)

    def _remove(self, key: K) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            # Subtract exactly what was added on insert
            self._current_size -= entry.size
