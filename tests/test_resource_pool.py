"""Tests for the bounded resource pool."""

import asyncio
import time

import pytest
from conftest import FakeEngine

from render_service.errors import PoolExhausted
from render_service.resource_pool import ResourcePool


@pytest.mark.asyncio
async def test_pool_start_creates_handles(make_settings):
    engine = FakeEngine()
    pool = ResourcePool(engine, make_settings(pool_size=3))

    await pool.start()
    try:
        assert pool.total == 3
        assert pool.idle_count == 3
        assert pool.busy_count == 0
        assert engine.created == 3
    finally:
        await pool.stop()

    assert engine.destroyed == 3
    assert not pool.is_running()


@pytest.mark.asyncio
async def test_acquire_requires_start(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings())
    with pytest.raises(RuntimeError, match="not started"):
        await pool.acquire()


@pytest.mark.asyncio
async def test_acquire_and_release_resets_handle(make_settings):
    engine = FakeEngine()
    pool = ResourcePool(engine, make_settings(pool_size=1))
    await pool.start()
    try:
        lease = await pool.acquire()
        assert pool.busy_count == 1
        assert lease.active

        assert await pool.release(lease)
        assert pool.busy_count == 0
        assert engine.resets == 1
        assert not lease.active
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_double_release_is_a_no_op(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings(pool_size=1))
    await pool.start()
    try:
        lease = await pool.acquire()
        assert await pool.release(lease)
        other = await pool.acquire()

        # The stale lease must not free the slot now held by someone else
        assert not await pool.release(lease)
        assert not await pool.recycle(lease)
        assert pool.busy_count == 1
        assert other.active

        await pool.release(other)
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_recycle_increments_generation(make_settings):
    engine = FakeEngine()
    pool = ResourcePool(engine, make_settings(pool_size=1))
    await pool.start()
    try:
        lease = await pool.acquire()
        old_handle = lease.handle
        resource = lease.resource

        assert await pool.recycle(lease, reason="failed")

        assert resource.generation == lease.generation + 1
        assert resource.handle is not old_handle
        assert old_handle.closed
        assert pool.idle_count == 1
        assert pool.total_recycles == 1
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_busy_never_exceeds_capacity(make_settings):
    engine = FakeEngine()
    pool = ResourcePool(engine, make_settings(pool_size=2, pool_max_overflow=1, acquire_timeout=0.2))
    await pool.start()
    try:
        leases = [await pool.acquire() for _ in range(3)]
        assert pool.busy_count == 3
        assert pool.total == 3
        assert len({id(lease.handle) for lease in leases}) == 3

        with pytest.raises(PoolExhausted):
            await pool.acquire()
        assert pool.busy_count == 3

        for lease in leases:
            await pool.release(lease)

        # Overflow handles are dropped again once released
        assert pool.total == 2
        assert pool.busy_count == 0
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_fail_policy_raises_immediately(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings(pool_size=1, acquire_policy="fail", acquire_timeout=10.0))
    await pool.start()
    try:
        lease = await pool.acquire()
        start = time.monotonic()
        with pytest.raises(PoolExhausted, match="saturated"):
            await pool.acquire()
        assert time.monotonic() - start < 1.0
        await pool.release(lease)
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_block_policy_waits_for_release(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings(pool_size=1, acquire_timeout=2.0))
    await pool.start()
    try:
        lease = await pool.acquire()
        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)
        assert not waiter.done()
        assert pool.stats()["waiting"] == 1

        await pool.release(lease)
        second = await asyncio.wait_for(waiter, timeout=1.0)
        assert second.resource is lease.resource
        await pool.release(second)
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_waiters_are_served_in_fifo_order(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings(pool_size=1, acquire_timeout=2.0))
    await pool.start()
    try:
        lease = await pool.acquire()
        order = []

        async def acquire_and_record(name):
            acquired = await pool.acquire()
            order.append(name)
            await pool.release(acquired)

        tasks = []
        for name in ("first", "second", "third"):
            tasks.append(asyncio.create_task(acquire_and_record(name)))
            await asyncio.sleep(0.01)

        await pool.release(lease)
        await asyncio.wait_for(asyncio.gather(*tasks), timeout=2.0)
        assert order == ["first", "second", "third"]
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_lose_the_handle(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings(pool_size=1, acquire_timeout=2.0))
    await pool.start()
    try:
        lease = await pool.acquire()
        cancelled = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)
        cancelled.cancel()
        await pool.release(lease)

        again = await asyncio.wait_for(pool.acquire(), timeout=1.0)
        assert pool.busy_count == 1
        await pool.release(again)
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_lease_context_recycles_on_error(make_settings):
    engine = FakeEngine()
    pool = ResourcePool(engine, make_settings(pool_size=1))
    await pool.start()
    try:
        with pytest.raises(ValueError):
            async with pool.lease() as lease:
                resource = lease.resource
                raise ValueError("render blew up")

        assert resource.generation == 1
        assert pool.idle_count == 1

        async with pool.lease() as lease:
            assert lease.resource is resource
        assert resource.generation == 1
        assert engine.resets == 1
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_lease_context_recycles_on_cancellation(make_settings):
    engine = FakeEngine()
    pool = ResourcePool(engine, make_settings(pool_size=1))
    await pool.start()
    try:
        entered = asyncio.Event()

        async def hold():
            async with pool.lease():
                entered.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(hold())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert pool.busy_count == 0
        assert pool.resources[0].generation == 1
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_failed_reset_turns_release_into_recycle(make_settings):
    engine = FakeEngine()
    pool = ResourcePool(engine, make_settings(pool_size=1))
    await pool.start()
    try:
        lease = await pool.acquire()
        engine.fail_reset = True
        await pool.release(lease)

        assert lease.resource.generation == 1
        assert pool.idle_count == 1
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_watchdog_reclaims_stale_leases(make_settings):
    engine = FakeEngine()
    pool = ResourcePool(engine, make_settings(pool_size=1, max_hold_seconds=0.05))
    await pool.start()
    try:
        lease = await pool.acquire()
        await asyncio.sleep(0.1)

        assert await pool.reclaim_stale() == 1
        assert not lease.active
        assert pool.idle_count == 1
        assert lease.resource.generation == 1

        # The late holder's release is ignored
        assert not await pool.release(lease)
        assert pool.total_reclaims == 1
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_cleanup_idle_recycles_old_handles(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings(pool_size=2, idle_recycle_seconds=0.05))
    await pool.start()
    try:
        await asyncio.sleep(0.1)
        assert await pool.cleanup_idle() == 2
        assert all(resource.generation == 1 for resource in pool.resources)
        assert await pool.cleanup_idle() == 0
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_shrink_and_grow(make_settings):
    engine = FakeEngine()
    pool = ResourcePool(engine, make_settings(pool_size=3, pool_min_size=1, pool_max_size=4))
    await pool.start()
    try:
        assert await pool.shrink(1) == 1
        assert pool.size == 2
        assert pool.total == 2

        assert await pool.shrink(5) == 1
        assert pool.size == 1
        assert pool.total == 1

        assert await pool.grow(10) == 3
        assert pool.size == 4
        assert pool.total == 4
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_restore_returns_to_configured_size(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings(pool_size=3, pool_min_size=1, pool_max_size=4))
    await pool.start()
    try:
        assert await pool.restore() == 0

        await pool.shrink(2)
        assert pool.size == 1

        assert await pool.restore() == 2
        assert pool.size == pool.target_size == 3
        assert pool.total == 3
        assert pool.stats()["target_size"] == 3
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_shrink_drops_busy_handles_on_release(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings(pool_size=2, pool_min_size=1))
    await pool.start()
    try:
        first = await pool.acquire()
        second = await pool.acquire()
        await pool.shrink(1)
        assert pool.total == 2

        await pool.release(first)
        assert pool.total == 1
        await pool.release(second)
        assert pool.total == 1
        assert pool.idle_count == 1
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_recycle_all_flags_busy_handles(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings(pool_size=2))
    await pool.start()
    try:
        lease = await pool.acquire()
        assert await pool.recycle_all(reason="memory") == 2

        idle = next(resource for resource in pool.resources if resource is not lease.resource)
        assert idle.generation == 1
        assert lease.resource.recycle_requested

        await pool.release(lease)
        assert lease.resource.generation == 1
        assert not lease.resource.recycle_requested
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_stop_fails_pending_waiters(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings(pool_size=1, acquire_timeout=5.0))
    await pool.start()
    await pool.acquire()
    waiter = asyncio.create_task(pool.acquire())
    await asyncio.sleep(0.01)

    await pool.stop()

    with pytest.raises(PoolExhausted, match="stopped"):
        await waiter


@pytest.mark.asyncio
async def test_stats(make_settings):
    pool = ResourcePool(FakeEngine(), make_settings(pool_size=2, pool_max_overflow=1))
    await pool.start()
    try:
        lease = await pool.acquire()
        stats = pool.stats()
        assert stats["size"] == 2
        assert stats["capacity"] == 3
        assert stats["busy"] == 1
        assert stats["idle"] == 1
        assert stats["waiting"] == 0
        assert stats["acquire_policy"] == "block"
        await pool.release(lease)
    finally:
        await pool.stop()
