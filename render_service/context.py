"""Explicit per-worker container for the render service components."""

from __future__ import annotations

import logging
import time

from render_service.chromium_engine import ChromiumEngine, RenderEngine
from render_service.config import Settings
from render_service.content_cache import ContentCache
from render_service.job_scheduler import JobScheduler
from render_service.memory_monitor import MemoryMonitor, Sampler
from render_service.resource_pool import ResourcePool


class RenderContext:
    """
    Owns the engine, pool, cache, scheduler and memory monitor of one worker.

    Components are started in dependency order and stopped in reverse, so the
    scheduler never hands work to a pool whose engine is gone.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        engine: RenderEngine | None = None,
        sampler: Sampler | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.log = logger or logging.getLogger(__name__)
        self.settings = settings or Settings()
        self.engine: RenderEngine = engine or ChromiumEngine(self.settings)
        self.pool = ResourcePool(self.engine, self.settings)
        self.cache = ContentCache.from_settings(self.settings)
        self.scheduler = JobScheduler(self.pool, self.cache, self.engine, self.settings)
        self.monitor = MemoryMonitor(self.cache, self.pool, self.settings, sampler=sampler)
        self.started_at = time.time()
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        self.log.info("Starting render context...")
        await self.engine.start()
        await self.cache.start()
        await self.pool.start()
        await self.scheduler.start()
        await self.monitor.start()
        self.started_at = time.time()
        self._started = True
        self.log.info("Render context started")

    async def stop(self) -> None:
        if not self._started:
            return
        self.log.info("Stopping render context...")
        try:
            await self.monitor.stop()
            await self.scheduler.stop()
            await self.pool.stop()
            await self.cache.stop()
        finally:
            await self.engine.stop()
            self._started = False
        self.log.info("Render context stopped")

    def is_running(self) -> bool:
        return self._started

    def uptime_seconds(self) -> float:
        return time.time() - self.started_at
