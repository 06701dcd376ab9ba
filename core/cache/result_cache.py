# Path: core/cache/result_cache.py
# Purpose: Provide the TTL + capacity-bounded LRU cache shared by the dispatcher, embedding engine, and atlas packer.
# Layer: core/cache.
# Details: All operations hold one lock so byte and entry budgets hold under concurrent callers.

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import numpy as np
from pydantic import BaseModel

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    """A cached value with expiry and access bookkeeping."""

    value: Any
    created_at: float
    expires_at: float
    access_count: int
    last_accessed: float
    size: int


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0
    total_size: int = 0
    entry_count: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    @property
    def average_entry_size(self) -> float:
        return self.total_size / self.entry_count if self.entry_count else 0.0


def estimate_size(value: Any) -> int:
    """Estimate the serialized size of a value in bytes."""

    if value is None:
        return 4
    if isinstance(value, bool):
        return 4
    if isinstance(value, (int, float)):
        return 8
    if isinstance(value, (bytes, bytearray, memoryview)):
        return len(value)
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    if isinstance(value, Enum):
        return estimate_size(value.value)
    if isinstance(value, Path):
        return len(str(value).encode("utf-8"))
    if isinstance(value, np.ndarray):
        return int(value.nbytes)
    if isinstance(value, BaseModel):
        return estimate_size(value.model_dump())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return sum(estimate_size(getattr(value, f.name)) + len(f.name) for f in dataclasses.fields(value))
    if isinstance(value, dict):
        return sum(estimate_size(k) + estimate_size(v) for k, v in value.items()) + 2
    if isinstance(value, (list, tuple, set, frozenset)):
        return sum(estimate_size(item) for item in value) + 2
    return len(repr(value).encode("utf-8"))


class ResultCache:
    """Key/value store with per-entry TTL and LRU eviction under byte and entry budgets.

    ``get`` refreshes only access bookkeeping, never expiry. Entries whose size
    alone exceeds the byte budget are refused rather than stored.
    """

    def __init__(
        self,
        max_bytes: int = 100 * 1024 * 1024,
        max_entries: int = 10_000,
        default_ttl: float = 3600.0,
        clock: Optional[Clock] = None,
    ) -> None:
        if max_bytes <= 0 or max_entries <= 0:
            raise ValueError("Cache budgets must be positive.")
        self.max_bytes = max_bytes
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock: Clock = clock or time.monotonic
        self._entries: Dict[str, CacheEntry] = {}
        self._stats = CacheStats()
        self._lock = threading.RLock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()

    @classmethod
    def from_settings(cls, settings: Any, clock: Optional[Clock] = None) -> "ResultCache":
        """Build a cache from :class:`config.CacheSettings`."""

        return cls(
            max_bytes=settings.max_bytes,
            max_entries=settings.max_entries,
            default_ttl=settings.default_ttl,
            clock=clock,
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def total_size(self) -> int:
        with self._lock:
            return self._stats.total_size

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss or an expired entry."""

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None

            now = self._clock()
            if now >= entry.expires_at:
                self._remove(key)
                self._stats.misses += 1
                self._stats.expirations += 1
                return None

            entry.access_count += 1
            entry.last_accessed = now
            self._stats.hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store a value; returns False when it cannot fit into the byte budget at all."""

        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("Cache TTL must be positive.")
        size = estimate_size(value)

        with self._lock:
            if size > self.max_bytes:
                logger.warning("Refusing cache entry %s: %d bytes exceeds budget of %d", key, size, self.max_bytes)
                return False

            if key in self._entries:
                self._remove(key)
            self._ensure_capacity(size)

            now = self._clock()
            self._entries[key] = CacheEntry(
                value=value,
                created_at=now,
                expires_at=now + ttl,
                access_count=0,
                last_accessed=now,
                size=size,
            )
            self._stats.total_size += size
            self._stats.entry_count = len(self._entries)
            self._stats.sets += 1
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    def has(self, key: str) -> bool:
        """Return True if the key exists and is not expired, without touching access bookkeeping."""

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._clock() >= entry.expires_at:
                self._remove(key)
                self._stats.expirations += 1
                return False
            return True

    async def get_or_set(self, key: str, factory: Callable[[], Awaitable[Any]], ttl: Optional[float] = None) -> Any:
        """Return the cached value or await ``factory`` and cache its result."""

        existing = self.get(key)
        if existing is not None:
            return existing
        value = await factory()
        self.set(key, value, ttl)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._stats = CacheStats()

    def sweep_expired(self) -> int:
        """Remove every expired entry; returns the number removed."""

        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            reclaimed = 0
            for key in expired:
                reclaimed += self._entries[key].size
                self._remove(key)
            self._stats.expirations += len(expired)

        if expired:
            logger.info("Cache sweep removed %d expired entries, reclaimed %s", len(expired), format_bytes(reclaimed))
        return len(expired)

    def start_background_sweep(self, interval: float) -> None:
        """Run :meth:`sweep_expired` every ``interval`` seconds on a daemon thread."""

        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_sweeper.clear()

        def _loop() -> None:
            while not self._stop_sweeper.wait(interval):
                try:
                    self.sweep_expired()
                except Exception:  # noqa: BLE001
                    logger.exception("Cache sweep failed")

        self._sweeper = threading.Thread(target=_loop, name="result-cache-sweeper", daemon=True)
        self._sweeper.start()

    def stop_background_sweep(self) -> None:
        self._stop_sweeper.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None

    def stats(self) -> CacheStats:
        with self._lock:
            return dataclasses.replace(self._stats, entry_count=len(self._entries))

    def top_entries(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Return the most accessed entries, for diagnostics."""

        with self._lock:
            ranked = sorted(self._entries.items(), key=lambda item: item[1].access_count, reverse=True)
            return [
                {
                    "key": key,
                    "access_count": entry.access_count,
                    "last_accessed": entry.last_accessed,
                    "size": format_bytes(entry.size),
                }
                for key, entry in ranked[:limit]
            ]

    def health_check(self) -> bool:
        key = "__health_check__"
        try:
            self.set(key, {"ok": True}, ttl=60)
            value = self.get(key)
            self.delete(key)
        except Exception:  # noqa: BLE001
            logger.exception("Cache health check failed")
            return False
        return value == {"ok": True}

    def _ensure_capacity(self, incoming_size: int) -> None:
        while self._entries and self._stats.total_size + incoming_size > self.max_bytes:
            self._evict_least_recently_used()
        while self._entries and len(self._entries) >= self.max_entries:
            self._evict_least_recently_used()

    def _evict_least_recently_used(self) -> None:
        # min() keeps the first of equal timestamps, i.e. the oldest insertion.
        oldest_key = min(self._entries, key=lambda key: self._entries[key].last_accessed)
        self._remove(oldest_key)
        self._stats.evictions += 1
        logger.debug("Evicted cache entry %s", oldest_key)

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._stats.total_size -= entry.size
        self._stats.entry_count = len(self._entries)


def format_bytes(size: int) -> str:
    """Format a byte count as a short human-readable string."""

    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.2f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.2f} GB"
