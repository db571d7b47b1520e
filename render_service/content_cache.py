"""
Two-tier content-addressed cache for rendered output.

Tier-1 is a bounded in-process LRU index with a TTL ceiling. Tier-2 is a
directory of blobs keyed by the same fingerprint, shared by all worker
processes and surviving restarts. Tier-1 is a faithful subset of Tier-2:
both tiers always receive the same bytes for a key.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import uuid4

from render_service import prometheus_metrics
from render_service.errors import CacheWriteError

if TYPE_CHECKING:
    from render_service.config import Settings


FINGERPRINT_PATTERN = re.compile(r"^[0-9a-f]{64}$")

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    """A Tier-1 entry."""

    key: str
    value: bytes
    size: int
    inserted_at: float
    last_accessed_at: float
    ttl_deadline: float

    def is_expired(self, now: float) -> bool:
        return now >= self.ttl_deadline


class MemoryCache:
    """
    Bounded LRU cache with a TTL hard ceiling.

    Entries are kept in recency order (oldest first). Eviction removes expired
    entries first, then the least recently used ones until both the item and
    the byte budget hold. Equal recency falls back to insertion order.
    """

    def __init__(self, max_items: int, max_bytes: int, ttl_seconds: float, clock: Clock = time.time) -> None:
        self.max_items = max_items
        self.max_bytes = max_bytes
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._bytes = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    @property
    def total_bytes(self) -> int:
        return self._bytes

    def get(self, key: str) -> bytes | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        now = self._clock()
        if entry.is_expired(now):
            self._remove(key)
            return None

        entry.last_accessed_at = now
        self._entries.move_to_end(key)
        return entry.value

    def put(self, key: str, value: bytes) -> bool:
        """
        Insert or replace an entry, evicting as needed.

        Returns:
            False if the value alone exceeds the byte budget and was not admitted.
        """
        size = len(value)
        if size > self.max_bytes:
            return False

        if key in self._entries:
            self._remove(key)

        now = self._clock()
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            size=size,
            inserted_at=now,
            last_accessed_at=now,
            ttl_deadline=now + self.ttl_seconds,
        )
        self._bytes += size
        self._evict(now)
        return True

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key)
        return len(expired)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        self._bytes = 0
        return count

    def _evict(self, now: float) -> None:
        if len(self._entries) <= self.max_items and self._bytes <= self.max_bytes:
            return

        for key in [key for key, entry in self._entries.items() if entry.is_expired(now)]:
            self._remove(key)

        while self._entries and (len(self._entries) > self.max_items or self._bytes > self.max_bytes):
            oldest = next(iter(self._entries))
            self._remove(oldest)

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._bytes -= entry.size


class DiskCache:
    """
    Durable Tier-2 store: one blob per fingerprint.

    Blobs older than the retention window (by modification time) are treated as
    misses and deleted by sweep(). Writes go through a temporary file and an
    atomic rename so readers in other worker processes never see partial data.
    """

    SUFFIX = ".bin"
    TMP_SUFFIX = ".tmp"

    def __init__(self, directory: Path, retention_seconds: float, logger: logging.Logger | None = None, clock: Clock = time.time) -> None:
        self.log = logger or logging.getLogger(__name__)
        self.directory = Path(directory)
        self.retention_seconds = retention_seconds
        self._clock = clock

    def path_for(self, key: str) -> Path:
        if not FINGERPRINT_PATTERN.match(key):
            raise ValueError(f"Invalid cache key: {key!r}")
        return self.directory / f"{key}{self.SUFFIX}"

    def read(self, key: str) -> bytes | None:
        path = self.path_for(key)
        try:
            if self._clock() - path.stat().st_mtime > self.retention_seconds:
                with contextlib.suppress(FileNotFoundError):
                    path.unlink()
                return None
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            self.log.warning("Failed to read cache blob %s: %s", path.name, e)
            return None

    def write(self, key: str, data: bytes) -> None:
        """
        Persist a blob atomically.

        Raises:
            CacheWriteError: If the blob cannot be written.
        """
        path = self.path_for(key)
        tmp_path = self.directory / f".{key}.{uuid4().hex}{self.TMP_SUFFIX}"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise CacheWriteError(f"Failed to write cache blob {path.name}: {e}") from e

    def contains(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def count(self) -> int:
        if not self.directory.is_dir():
            return 0
        return sum(1 for path in self.directory.iterdir() if path.suffix == self.SUFFIX)

    def sweep(self) -> int:
        """
        Delete blobs (and stale temporary files) older than the retention window.

        Returns:
            The number of files deleted.
        """
        if not self.directory.is_dir():
            return 0

        now = self._clock()
        removed = 0
        for path in self.directory.iterdir():
            if path.suffix not in (self.SUFFIX, self.TMP_SUFFIX):
                continue
            try:
                if now - path.stat().st_mtime > self.retention_seconds:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                # Another worker swept it first
                continue
            except OSError as e:
                self.log.warning("Failed to sweep cache blob %s: %s", path.name, e)
        return removed


class ContentCache:
    """
    Read-through cache combining the memory and disk tiers.

    Tier-2 I/O runs in worker threads so the event loop is never blocked, and
    Tier-2 writes happen in the background: a failed write is logged and counted
    but never fails the render, since Tier-1 already holds the result.
    """

    def __init__(
        self,
        memory: MemoryCache,
        disk: DiskCache,
        cleanup_interval: float = 3600.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.log = logger or logging.getLogger(__name__)
        self.memory = memory
        self.disk = disk
        self.cleanup_interval = cleanup_interval

        self._pending_writes: set[asyncio.Task[None]] = set()
        self._sweep_task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()

        self.memory_hits = 0
        self.disk_hits = 0
        self.misses = 0
        self.write_failures = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> ContentCache:
        return cls(
            memory=MemoryCache(
                max_items=settings.memory_cache_max_items,
                max_bytes=settings.memory_cache_max_bytes,
                ttl_seconds=settings.memory_cache_ttl,
            ),
            disk=DiskCache(settings.cache_dir, retention_seconds=settings.disk_cache_retention),
            cleanup_interval=settings.cache_cleanup_interval,
        )

    async def start(self) -> None:
        """Create the Tier-2 directory and start the periodic expiry sweep."""
        await asyncio.to_thread(self.disk.directory.mkdir, parents=True, exist_ok=True)
        if self._sweep_task is None:
            self._shutdown_event.clear()
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.log.info("Content cache started (dir: %s, max items: %d, ttl: %.0fs)", self.disk.directory, self.memory.max_items, self.memory.ttl_seconds)

    async def stop(self) -> None:
        """Stop the sweep loop and wait for pending Tier-2 writes."""
        if self._sweep_task is not None:
            self._shutdown_event.set()
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        await self.flush()

    async def get(self, key: str) -> bytes | None:
        """Look up Tier-1, then Tier-2, promoting Tier-2 hits into Tier-1."""
        value = self.memory.get(key)
        if value is not None:
            self.memory_hits += 1
            prometheus_metrics.cache_hits_total.labels(tier="memory").inc()
            return value

        value = await asyncio.to_thread(self.disk.read, key)
        if value is not None:
            self.disk_hits += 1
            prometheus_metrics.cache_hits_total.labels(tier="disk").inc()
            self.memory.put(key, value)
            return value

        self.misses += 1
        prometheus_metrics.cache_misses_total.inc()
        return None

    def put(self, key: str, value: bytes) -> None:
        """Write Tier-1 now and schedule the Tier-2 write."""
        if not self.memory.put(key, value):
            self.log.debug("Value for %s (%d bytes) exceeds the Tier-1 budget, stored on disk only", key[:12], len(value))

        task = asyncio.create_task(self._persist(key, value))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def flush(self) -> None:
        """Wait until every scheduled Tier-2 write has finished."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def invalidate_expired(self) -> tuple[int, int]:
        """
        Remove expired entries from both tiers.

        Returns:
            (memory_removed, disk_removed)
        """
        memory_removed = self.memory.evict_expired()
        disk_removed = await asyncio.to_thread(self.disk.sweep)
        if memory_removed or disk_removed:
            self.log.info("Cache sweep removed %d memory and %d disk entries", memory_removed, disk_removed)
        return memory_removed, disk_removed

    def clear(self) -> int:
        """Emergency flush of Tier-1 only. Tier-2 is disk-bounded and stays intact."""
        removed = self.memory.clear()
        self.log.warning("Tier-1 cache cleared (%d entries)", removed)
        return removed

    def stats(self) -> dict[str, int | float]:
        lookups = self.memory_hits + self.disk_hits + self.misses
        hit_rate = (self.memory_hits + self.disk_hits) / lookups * 100.0 if lookups else 0.0
        return {
            "items": len(self.memory),
            "bytes": self.memory.total_bytes,
            "max_items": self.memory.max_items,
            "max_bytes": self.memory.max_bytes,
            "memory_hits": self.memory_hits,
            "disk_hits": self.disk_hits,
            "misses": self.misses,
            "write_failures": self.write_failures,
            "hit_rate_percent": round(hit_rate, 2),
        }

    async def _persist(self, key: str, value: bytes) -> None:
        try:
            await asyncio.to_thread(self.disk.write, key, value)
        except CacheWriteError as e:
            self.write_failures += 1
            prometheus_metrics.cache_write_failures_total.inc()
            self.log.error("%s", e.message)

    async def _sweep_loop(self) -> None:
        self.log.info("Cache sweep loop started (interval: %.1fs)", self.cleanup_interval)
        try:
            while not self._shutdown_event.is_set():
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.cleanup_interval)
                    break
                except TimeoutError:
                    pass

                try:
                    await self.invalidate_expired()
                except Exception as e:  # noqa: BLE001
                    self.log.error("Cache sweep failed: %s", e)
        finally:
            self.log.info("Cache sweep loop stopped")
