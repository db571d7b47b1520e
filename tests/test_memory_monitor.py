"""Tests for the memory monitor and its relief escalation."""

import asyncio
from unittest.mock import MagicMock, patch

import psutil
import pytest
from conftest import MB, make_request

from render_service.memory_monitor import MemoryMonitor, process_tree_rss


class Sampler:
    def __init__(self, value: int) -> None:
        self.value = value

    def __call__(self) -> int:
        return self.value


def test_process_tree_rss_sums_children():
    child_ok = MagicMock()
    child_ok.memory_info.return_value.rss = 200 * MB
    child_gone = MagicMock()
    child_gone.memory_info.side_effect = psutil.NoSuchProcess(pid=42)

    with patch("render_service.memory_monitor.psutil.Process") as process_cls:
        process = process_cls.return_value
        process.memory_info.return_value.rss = 100 * MB
        process.children.return_value = [child_ok, child_gone]

        assert process_tree_rss() == 300 * MB
        process.children.assert_called_once_with(recursive=True)


@pytest.mark.asyncio
async def test_check_once_reports_threshold(make_context):
    context = make_context(memory_limit_mb=512)
    sampler = Sampler(100 * MB)
    monitor = MemoryMonitor(context.cache, context.pool, context.settings, sampler=sampler)

    assert monitor.check_once() == (100 * MB, False)
    sampler.value = 600 * MB
    assert monitor.check_once() == (600 * MB, True)
    assert monitor.last_sample_bytes == 600 * MB
    assert monitor.limit_bytes == 512 * MB


@pytest.mark.asyncio
async def test_memory_pressure_clears_tier1_but_keeps_tier2(make_context):
    """Simulated memory over the limit: Tier-1 is flushed, Tier-2 still serves the keys."""
    context = make_context(memory_limit_mb=512)
    await context.start()
    try:
        jobs = [await context.scheduler.run(make_request(f"<p>{i}</p>")) for i in range(3)]
        await context.cache.flush()
        assert len(context.cache.memory) == 3

        monitor = MemoryMonitor(context.cache, context.pool, context.settings, sampler=Sampler(600 * MB))
        await monitor.tick()

        assert monitor.level == 1
        assert len(context.cache.memory) == 0
        for job in jobs:
            assert await context.cache.get(job.fingerprint) == job.result
        assert context.cache.disk_hits == 3
    finally:
        await context.stop()


@pytest.mark.asyncio
async def test_relief_escalates_to_pool_shrink(make_context, fake_engine):
    context = make_context(pool_size=3, pool_min_size=1, memory_cooldown=0.0)
    await context.start()
    try:
        monitor = MemoryMonitor(context.cache, context.pool, context.settings, sampler=Sampler(600 * MB))

        await monitor.tick()
        assert monitor.level == 1
        assert context.pool.size == 3

        await monitor.tick()
        assert monitor.level == 2
        assert context.pool.size == 2
        assert context.pool.total == 2
        assert all(resource.generation == 1 for resource in context.pool.resources)
    finally:
        await context.stop()


@pytest.mark.asyncio
async def test_relief_waits_for_cooldown(make_context):
    context = make_context(pool_size=3, memory_cooldown=60.0)
    await context.start()
    try:
        monitor = MemoryMonitor(context.cache, context.pool, context.settings, sampler=Sampler(600 * MB))

        await monitor.tick()
        await monitor.tick()

        assert monitor.level == 1
        assert context.pool.size == 3
    finally:
        await context.stop()


@pytest.mark.asyncio
async def test_level_resets_below_limit(make_context):
    context = make_context()
    await context.start()
    try:
        sampler = Sampler(600 * MB)
        monitor = MemoryMonitor(context.cache, context.pool, context.settings, sampler=sampler)
        await monitor.tick()
        assert monitor.level == 1

        sampler.value = 100 * MB
        await monitor.tick()
        assert monitor.level == 0
    finally:
        await context.stop()


@pytest.mark.asyncio
async def test_pool_is_restored_after_pressure_ends(make_context):
    context = make_context(pool_size=3, pool_min_size=1, pool_max_overflow=0, max_concurrent_jobs=3)
    await context.start()
    try:
        sampler = Sampler(600 * MB)
        monitor = MemoryMonitor(context.cache, context.pool, context.settings, sampler=sampler)
        for _ in range(3):
            await monitor.tick()
        assert context.pool.size == 1

        sampler.value = 10 * MB
        for _ in range(3):
            await monitor.tick()

        assert monitor.level == 0
        assert context.pool.size == context.settings.pool_size
        assert context.pool.total == 3
        assert context.pool.capacity >= context.scheduler.max_concurrent_jobs
    finally:
        await context.stop()


@pytest.mark.asyncio
async def test_monitor_loop_samples_periodically(make_context):
    context = make_context(memory_check_interval=0.01)
    sampler = MagicMock(return_value=100 * MB)
    monitor = MemoryMonitor(context.cache, context.pool, context.settings, sampler=sampler)

    await monitor.start()
    assert monitor.is_running()
    await asyncio.sleep(0.05)
    await monitor.stop()

    assert sampler.call_count >= 2
    assert not monitor.is_running()


@pytest.mark.asyncio
async def test_monitor_loop_survives_sampler_errors(make_context):
    context = make_context(memory_check_interval=0.01)
    calls = []

    def sampler():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("proc unavailable")
        return 100 * MB

    monitor = MemoryMonitor(context.cache, context.pool, context.settings, sampler=sampler)

    await monitor.start()
    await asyncio.sleep(0.03)
    await monitor.stop()

    assert len(calls) >= 2
    assert monitor.last_sample_bytes == 100 * MB


@pytest.mark.asyncio
async def test_stats(make_context):
    context = make_context(memory_limit_mb=100)
    monitor = MemoryMonitor(context.cache, context.pool, context.settings, sampler=Sampler(50 * MB))
    monitor.check_once()

    stats = monitor.stats()
    assert stats["rss_bytes"] == 50 * MB
    assert stats["limit_bytes"] == 100 * MB
    assert stats["level"] == 0
    assert stats["usage_percent"] == 50.0
