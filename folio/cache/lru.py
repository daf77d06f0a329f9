"""Memory-bounded, time-expiring LRU cache.

One generic store serves both the search coordinator (per-backend search
results) and the backend indexers (raw listings). Entries expire ``ttl``
seconds after insertion and are purged lazily when touched; there is no
background sweep. Recency and size bookkeeping happen under a single lock,
and nothing inside the lock performs I/O.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

from loguru import logger

from folio.errors import CacheCorruptionError

V = TypeVar("V")

MB = 1024 * 1024

_MAX_DEPTH = 6


@dataclass
class _Entry(Generic[V]):
    value: V
    inserted_at: float
    last_accessed_at: float
    size: int


@dataclass
class CacheHealthReport:
    """Operational snapshot of a cache; exposes no keys or values."""

    name: str
    status: str  # empty | populated
    entries: int
    max_entries: int
    memory_bytes: int
    max_memory_bytes: int
    oldest_entry_age: float  # seconds, 0.0 when empty
    hits: int
    misses: int
    evictions: int

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    @property
    def memory_mb(self) -> float:
        return self.memory_bytes / MB


class LRUCache(Generic[V]):
    """Bounded key-to-value store evicting the least recently accessed entry."""

    def __init__(
        self,
        max_entries: int = 100,
        max_memory_bytes: int = 10 * MB,
        ttl: Optional[float] = 300.0,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if max_memory_bytes < 1:
            raise ValueError("max_memory_bytes must be positive")
        self.max_entries = max_entries
        self.max_memory_bytes = max_memory_bytes
        self.ttl = ttl if ttl and ttl > 0 else None
        self.name = name
        self._clock = clock

        self._entries: OrderedDict[str, _Entry[V]] = OrderedDict()
        self._memory = 0
        self._lock = threading.Lock()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str, default: Optional[V] = None) -> Optional[V]:
        """Return the cached value if present and unexpired, refreshing its recency."""
        expired = False
        try:
            with self._lock:
                now = self._clock()
                entry = self._entries.get(key)
                if entry is None:
                    self._misses += 1
                    return default
                if self._is_expired(entry, now):
                    self._remove_locked(key)
                    self._misses += 1
                    expired = True
                else:
                    entry.last_accessed_at = now
                    self._entries.move_to_end(key)
                    self._hits += 1
                    self._check_accounting_locked()
                    return entry.value
        except CacheCorruptionError as e:
            self._recover(e)
            return default

        if expired:
            logger.debug(f"[{self.name}] expired entry purged on access: {key}")
        return default

    def set(self, key: str, value: V) -> bool:
        """Insert or replace ``key``, evicting LRU entries until both budgets hold.

        Returns False when the value alone exceeds the memory budget and was
        therefore not cached.
        """
        size = estimate_size(value)
        if size > self.max_memory_bytes:
            logger.debug(
                f"[{self.name}] value for {key} ({size} bytes) exceeds the memory budget; not cached"
            )
            return False

        evicted: list[str] = []
        try:
            with self._lock:
                now = self._clock()
                if key in self._entries:
                    self._remove_locked(key)
                self._purge_expired_locked(now)

                while self._entries and (
                    len(self._entries) >= self.max_entries
                    or self._memory + size > self.max_memory_bytes
                ):
                    old_key, old = self._entries.popitem(last=False)
                    self._memory -= old.size
                    self._evictions += 1
                    evicted.append(old_key)

                self._entries[key] = _Entry(
                    value=value, inserted_at=now, last_accessed_at=now, size=size
                )
                self._memory += size
                self._check_accounting_locked()
        except CacheCorruptionError as e:
            self._recover(e)
            return False

        if evicted:
            logger.debug(f"[{self.name}] evicted {len(evicted)} LRU entries: {', '.join(evicted)}")
        return True

    def invalidate(self, key: str) -> bool:
        """Drop a single key. Returns True when it was present."""
        with self._lock:
            if key not in self._entries:
                return False
            self._remove_locked(key)
            return True

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with ``prefix``; returns how many went."""
        return self.invalidate_where(lambda k: k.startswith(prefix))

    def invalidate_where(self, predicate: Callable[[str], bool]) -> int:
        with self._lock:
            doomed = [k for k in self._entries if predicate(k)]
            for k in doomed:
                self._remove_locked(k)
        if doomed:
            logger.debug(f"[{self.name}] invalidated {len(doomed)} entries")
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._memory = 0

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def health(self) -> CacheHealthReport:
        with self._lock:
            now = self._clock()
            oldest = min((e.inserted_at for e in self._entries.values()), default=None)
            return CacheHealthReport(
                name=self.name,
                status="populated" if self._entries else "empty",
                entries=len(self._entries),
                max_entries=self.max_entries,
                memory_bytes=self._memory,
                max_memory_bytes=self.max_memory_bytes,
                oldest_entry_age=(now - oldest) if oldest is not None else 0.0,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
            )

    def keys(self) -> list[str]:
        """Keys from least to most recently accessed."""
        with self._lock:
            return list(self._entries)

    @property
    def memory_bytes(self) -> int:
        return self._memory

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._is_expired(entry, self._clock())

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _is_expired(self, entry: _Entry[V], now: float) -> bool:
        return self.ttl is not None and now - entry.inserted_at >= self.ttl

    def _remove_locked(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._memory -= entry.size

    def _purge_expired_locked(self, now: float) -> None:
        if self.ttl is None:
            return
        for k in [k for k, e in self._entries.items() if self._is_expired(e, now)]:
            self._remove_locked(k)

    def _check_accounting_locked(self) -> None:
        if self._memory < 0:
            raise CacheCorruptionError(f"negative memory accounting ({self._memory} bytes)")
        if not self._entries and self._memory != 0:
            raise CacheCorruptionError(f"empty cache reports {self._memory} bytes in use")
        if len(self._entries) > self.max_entries:
            raise CacheCorruptionError(
                f"{len(self._entries)} entries exceed the limit of {self.max_entries}"
            )

    def _recover(self, error: CacheCorruptionError) -> None:
        logger.error(f"[{self.name}] cache reset after corruption: {error}")
        with self._lock:
            self._entries.clear()
            self._memory = 0


def estimate_size(value: object, _depth: int = 0) -> int:
    """Rough byte estimate of a value, used for the memory budget."""
    if value is None or isinstance(value, (bool, int, float, Enum, datetime, date)):
        return 8
    if isinstance(value, str):
        return len(value) * 2
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    if _depth >= _MAX_DEPTH:
        return 64
    if isinstance(value, dict):
        return 64 + sum(
            estimate_size(k, _depth + 1) + estimate_size(v, _depth + 1) for k, v in value.items()
        )
    if isinstance(value, (list, tuple, set, frozenset)):
        return 32 + sum(estimate_size(item, _depth + 1) for item in value)
    if dataclasses.is_dataclass(value):
        return 64 + sum(
            estimate_size(getattr(value, f.name), _depth + 1) for f in dataclasses.fields(value)
        )
    if hasattr(value, "__dict__"):
        return 64 + estimate_size(vars(value), _depth + 1)
    return 64


# ----------------------------------------------------------------------
# Presets
# ----------------------------------------------------------------------


def search_result_cache(**overrides) -> LRUCache:
    """Cache tuned for per-backend search results: 100 entries, 10 MB, 5 minutes."""
    options = {"max_entries": 100, "max_memory_bytes": 10 * MB, "ttl": 5 * 60, "name": "search"}
    options.update(overrides)
    return LRUCache(**options)


def listing_cache(**overrides) -> LRUCache:
    """Cache tuned for raw backend listings: 50 entries, 25 MB, 15 minutes."""
    options = {"max_entries": 50, "max_memory_bytes": 25 * MB, "ttl": 15 * 60, "name": "listing"}
    options.update(overrides)
    return LRUCache(**options)
