"""
Resident memory watchdog for a worker process.

Chromium runs as child processes of the worker, so the sampled figure is the
RSS of the worker plus all of its descendants.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import psutil

from render_service import prometheus_metrics

if TYPE_CHECKING:
    from render_service.config import Settings
    from render_service.content_cache import ContentCache
    from render_service.resource_pool import ResourcePool


Sampler = Callable[[], int]


def process_tree_rss() -> int:
    """Return the RSS in bytes of the current process and its children."""
    process = psutil.Process()
    total = process.memory_info().rss
    for child in process.children(recursive=True):
        # Children may exit between listing and sampling
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            total += child.memory_info().rss
    return total


class MemoryMonitor:
    """
    Samples resident memory and sheds load when the limit is exceeded.

    Relief escalates in levels: the first breach clears the Tier-1 cache; if
    memory is still over the limit once the cooldown has passed, the pool is
    shrunk by one handle and every handle is recycled. Dropping back under the
    limit resets the level and grows the pool back to its configured size.
    """

    def __init__(
        self,
        cache: ContentCache,
        pool: ResourcePool,
        settings: Settings,
        sampler: Sampler | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.log = logger or logging.getLogger(__name__)
        self._cache = cache
        self._pool = pool
        self._sampler = sampler or process_tree_rss

        self.limit_bytes = settings.memory_limit_bytes
        self.check_interval = settings.memory_check_interval
        self.cooldown = settings.memory_cooldown

        self.level = 0
        self.last_sample_bytes = 0
        self._last_relief_at: float | None = None
        self._monitor_task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()

    def check_once(self) -> tuple[int, bool]:
        """
        Sample memory once.

        Returns:
            (rss_bytes, exceeded): Current RSS and whether it exceeds the limit.
        """
        rss = self._sampler()
        self.last_sample_bytes = rss
        return rss, rss > self.limit_bytes

    async def relieve(self) -> int:
        """
        Apply the next relief action allowed by the cooldown.

        Returns:
            The relief level after this call.
        """
        now = time.monotonic()
        if self.level == 0:
            removed = self._cache.clear()
            self.level = 1
            self._last_relief_at = now
            prometheus_metrics.memory_relief_total.labels(action="cache_clear").inc()
            self.log.warning("Memory relief level 1: cleared %d Tier-1 cache entries", removed)
            return self.level

        if self._last_relief_at is not None and now - self._last_relief_at < self.cooldown:
            self.log.debug("Memory relief cooling down (%.1fs left)", self.cooldown - (now - self._last_relief_at))
            return self.level

        shrunk = await self._pool.shrink(1)
        recycled = await self._pool.recycle_all(reason="memory")
        self.level = 2
        self._last_relief_at = now
        prometheus_metrics.memory_relief_total.labels(action="pool_shrink").inc()
        self.log.warning("Memory relief level 2: pool shrunk by %d, %d handle(s) recycled", shrunk, recycled)
        return self.level

    async def tick(self) -> int:
        """Run one sample and, if over the limit, one relief step. Returns the RSS."""
        rss, exceeded = self.check_once()
        if exceeded:
            self.log.warning("Memory usage %.1f MB exceeds limit %.1f MB", rss / 1024 / 1024, self.limit_bytes / 1024 / 1024)
            await self.relieve()
        elif self.level:
            self.log.info("Memory usage back under limit (%.1f MB), relief level reset", rss / 1024 / 1024)
            self.level = 0
            self._last_relief_at = None
            restored = await self._pool.restore()
            if restored:
                self.log.info("Resource pool restored by %d to %d handle(s)", restored, self._pool.size)
        return rss

    async def start(self) -> None:
        if self._monitor_task is not None:
            self.log.warning("Memory monitor already started")
            return
        self._shutdown_event.clear()
        self._monitor_task = asyncio.create_task(self._monitor_loop())

    async def stop(self) -> None:
        if self._monitor_task is None:
            return
        self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._monitor_task, timeout=5.0)
        except TimeoutError:
            self._monitor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._monitor_task
        self._monitor_task = None

    def is_running(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    def stats(self) -> dict[str, int | float]:
        return {
            "rss_bytes": self.last_sample_bytes,
            "limit_bytes": self.limit_bytes,
            "level": self.level,
            "usage_percent": round(self.last_sample_bytes / self.limit_bytes * 100.0, 2),
        }

    async def _monitor_loop(self) -> None:
        self.log.info("Memory monitor started (limit: %d MB, interval: %.1fs)", self.limit_bytes // (1024 * 1024), self.check_interval)
        while not self._shutdown_event.is_set():
            try:
                await self.tick()
            except Exception as e:  # noqa: BLE001
                self.log.error("Memory check failed: %s", e)

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.check_interval)
                break
            except TimeoutError:
                pass
        self.log.info("Memory monitor stopped")
