"""
Bounded pool of exclusive rendering handles.

Handles are expensive to create and not reentrant, so the pool keeps a fixed
number of them open, creates a few overflow handles lazily under saturation
and guarantees that a handle is never held by two renders at once. Every
acquisition is settled exactly once: released (handle reset and reused) or
recycled (handle torn down and recreated with a new generation).
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from render_service import prometheus_metrics
from render_service.config import ACQUIRE_POLICY_FAIL
from render_service.errors import EngineError, PoolExhausted

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from render_service.chromium_engine import RenderEngine
    from render_service.config import Settings


@dataclass(eq=False)
class PoolResource:
    """
    A pooled rendering handle.

    Attributes:
        id: Stable identifier of the slot, kept across recycles.
        handle: Engine handle currently backing the slot.
        busy: Exclusive-ownership flag, set and cleared only by the pool.
        generation: Incremented every time the handle is torn down and recreated.
        created_at: Monotonic time the current handle was created.
        last_used_at: Monotonic time the slot was last handed out or returned.
        recycle_requested: Recycle instead of reuse on the next release.
        lease: The lease currently owning the slot, if any.
    """

    id: int
    handle: Any
    busy: bool = False
    generation: int = 0
    created_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)
    recycle_requested: bool = False
    lease: PoolLease | None = None


@dataclass(eq=False)
class PoolLease:
    """Ownership token returned by acquire(). Settled once by release() or recycle()."""

    resource: PoolResource
    generation: int
    acquired_at: float
    settled: bool = False

    @property
    def handle(self) -> Any:
        return self.resource.handle

    @property
    def active(self) -> bool:
        return not self.settled and self.resource.lease is self


class ResourcePool:
    """
    Fixed-size pool of rendering handles with lazy overflow.

    Acquisition follows the configured policy: "block" waits in FIFO order until
    a handle frees up or the acquisition timeout elapses, "fail" raises
    PoolExhausted as soon as the pool is saturated.
    """

    def __init__(self, engine: RenderEngine, settings: Settings, logger: logging.Logger | None = None) -> None:
        self.log = logger or logging.getLogger(__name__)
        self._engine = engine

        self.size = settings.pool_size
        self.target_size = settings.pool_size
        self.min_size = settings.pool_min_size
        self.max_size = settings.pool_max_size
        self.max_overflow = settings.pool_max_overflow
        self.acquire_policy = settings.acquire_policy
        self.acquire_timeout = settings.acquire_timeout
        self.idle_recycle_seconds = settings.idle_recycle_seconds
        self.max_hold_seconds = settings.max_hold_seconds
        self.maintenance_interval = settings.pool_maintenance_interval

        self._resources: dict[int, PoolResource] = {}
        self._pending = 0
        self._ids = itertools.count(1)
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._started = False
        self._maintenance_task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()

        self.total_acquired = 0
        self.total_released = 0
        self.total_recycles = 0
        self.total_exhausted = 0
        self.total_reclaims = 0

    @property
    def capacity(self) -> int:
        return self.size + self.max_overflow

    @property
    def total(self) -> int:
        return len(self._resources) + self._pending

    @property
    def busy_count(self) -> int:
        return sum(1 for resource in self._resources.values() if resource.busy)

    @property
    def idle_count(self) -> int:
        return sum(1 for resource in self._resources.values() if not resource.busy)

    @property
    def resources(self) -> list[PoolResource]:
        return list(self._resources.values())

    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Create the initial handles and start the maintenance loop."""
        if self._started:
            self.log.warning("Resource pool already started")
            return

        self.log.info("Starting resource pool with %d handle(s) (overflow: %d, policy: %s)", self.size, self.max_overflow, self.acquire_policy)
        for _ in range(self.size):
            await self._create_resource()
        self._started = True

        self._shutdown_event.clear()
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        self.log.info("Resource pool started")

    async def stop(self) -> None:
        """Stop maintenance, fail pending waiters and destroy every handle."""
        if not self._started and not self._resources:
            return

        self._started = False
        if self._maintenance_task is not None:
            self._shutdown_event.set()
            try:
                await asyncio.wait_for(self._maintenance_task, timeout=5.0)
            except TimeoutError:
                self.log.warning("Pool maintenance task did not stop within timeout, cancelling...")
                self._maintenance_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._maintenance_task
            finally:
                self._maintenance_task = None

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolExhausted("Resource pool stopped"))

        resources = list(self._resources.values())
        self._resources.clear()
        for resource in resources:
            resource.lease = None
            await self._engine.destroy_handle(resource.handle)
        self.log.info("Resource pool stopped (%d handle(s) destroyed)", len(resources))

    async def acquire(self) -> PoolLease:
        """
        Acquire exclusive ownership of a rendering handle.

        Returns:
            A PoolLease that must be settled with release() or recycle().

        Raises:
            PoolExhausted: If no handle is available under the acquisition policy.
            EngineError: If a lazily created overflow handle cannot be created.
        """
        if not self._started:
            raise RuntimeError("Resource pool not started. Call start() first.")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.acquire_timeout

        while True:
            resource = self._take_idle()
            if resource is None and self.total < self.capacity:
                try:
                    resource = await self._create_resource()
                except Exception:
                    self._wake_next_waiter()
                    raise
            if resource is not None:
                return self._lease(resource)

            if self.acquire_policy == ACQUIRE_POLICY_FAIL:
                raise self._exhausted("Resource pool saturated")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise self._exhausted(f"No rendering handle available within {self.acquire_timeout}s")

            waiter: asyncio.Future[None] = loop.create_future()
            self._waiters.append(waiter)
            try:
                await asyncio.wait_for(waiter, timeout=remaining)
            except TimeoutError:
                raise self._exhausted(f"No rendering handle available within {self.acquire_timeout}s") from None
            except asyncio.CancelledError:
                # Hand a wakeup we can no longer use to the next waiter
                if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                    self._wake_next_waiter()
                raise
            finally:
                with contextlib.suppress(ValueError):
                    self._waiters.remove(waiter)

    async def release(self, lease: PoolLease) -> bool:
        """
        Return a handle to the idle set.

        Returns:
            True if the lease was settled by this call, False if it was already settled
            (double release) or reclaimed by the watchdog.
        """
        if not self._settle_lease(lease, "release"):
            return False
        self.total_released += 1
        await asyncio.shield(self._settle(lease.resource, recycle=False, reason="released"))
        return True

    async def recycle(self, lease: PoolLease, reason: str = "failed") -> bool:
        """
        Tear down and recreate the handle of a lease, then return the slot to the idle set.

        Returns:
            True if the lease was settled by this call, False if it was already settled.
        """
        if not self._settle_lease(lease, "recycle"):
            return False
        self.total_released += 1
        await asyncio.shield(self._settle(lease.resource, recycle=True, reason=reason))
        return True

    @asynccontextmanager
    async def lease(self) -> AsyncGenerator[PoolLease]:
        """
        Scoped acquisition of a rendering handle.

        The handle is released when the block exits normally and recycled when it
        exits through any exception, including timeouts and cancellation.
        """
        lease = await self.acquire()
        try:
            yield lease
        except BaseException:
            await self.recycle(lease, reason="failed")
            raise
        else:
            await self.release(lease)

    async def shrink(self, n: int = 1) -> int:
        """
        Lower the target pool size by up to n, never below min_size.

        Idle excess handles are destroyed at once, busy ones when they are released.

        Returns:
            The number of slots removed from the target size.
        """
        new_size = max(self.min_size, self.size - n)
        removed = self.size - new_size
        self.size = new_size

        for resource in list(self._resources.values()):
            if len(self._resources) <= self.size:
                break
            if not resource.busy:
                resource.busy = True
                await self._discard(resource)

        if removed:
            self.log.info("Resource pool shrunk by %d to %d handle(s)", removed, self.size)
        return removed

    async def grow(self, n: int = 1) -> int:
        """
        Raise the target pool size by up to n, never above max_size.

        Returns:
            The number of slots added to the target size.
        """
        new_size = min(self.max_size, self.size + n)
        added = new_size - self.size
        self.size = new_size

        while self._started and self.total < self.size:
            try:
                await self._create_resource()
            except Exception as e:  # noqa: BLE001
                self.log.error("Failed to create handle while growing the pool: %s", e)
                break
            self._wake_next_waiter()

        if added:
            self.log.info("Resource pool grown by %d to %d handle(s)", added, self.size)
        return added

    async def restore(self) -> int:
        """Grow back to the configured size after earlier shrinks. Returns the slots added."""
        if self.size >= self.target_size:
            return 0
        return await self.grow(self.target_size - self.size)

    async def recycle_all(self, reason: str = "bulk") -> int:
        """
        Recycle every idle handle now and flag busy ones for recycling on release.

        Returns:
            The number of handles recycled or flagged.
        """
        count = 0
        for resource in list(self._resources.values()):
            if resource.id not in self._resources:
                continue
            count += 1
            if resource.busy:
                resource.recycle_requested = True
                continue
            resource.busy = True
            await self._settle(resource, recycle=True, reason=reason)
        return count

    async def cleanup_idle(self) -> int:
        """
        Recycle idle handles that have not been used for idle_recycle_seconds.

        Returns:
            The number of handles recycled.
        """
        now = time.monotonic()
        count = 0
        for resource in list(self._resources.values()):
            if resource.id not in self._resources or resource.busy:
                continue
            if now - resource.last_used_at <= self.idle_recycle_seconds:
                continue
            resource.busy = True
            await self._settle(resource, recycle=True, reason="idle")
            count += 1
        return count

    async def reclaim_stale(self) -> int:
        """
        Watchdog pass: reclaim handles held longer than max_hold_seconds.

        The holder's lease is invalidated so that its later release or recycle is a
        no-op, and the handle is recycled since its state is unknown.

        Returns:
            The number of handles reclaimed.
        """
        now = time.monotonic()
        count = 0
        for resource in list(self._resources.values()):
            lease = resource.lease
            if lease is None or now - lease.acquired_at <= self.max_hold_seconds:
                continue
            self.log.error("Handle %d held for %.1fs (limit %.1fs), reclaiming", resource.id, now - lease.acquired_at, self.max_hold_seconds)
            resource.lease = None
            self.total_reclaims += 1
            prometheus_metrics.pool_watchdog_reclaims_total.inc()
            await self._settle(resource, recycle=True, reason="watchdog")
            count += 1
        return count

    def stats(self) -> dict[str, int | str]:
        return {
            "size": self.size,
            "target_size": self.target_size,
            "capacity": self.capacity,
            "total": self.total,
            "busy": self.busy_count,
            "idle": self.idle_count,
            "waiting": sum(1 for waiter in self._waiters if not waiter.done()),
            "acquire_policy": self.acquire_policy,
            "total_acquired": self.total_acquired,
            "total_released": self.total_released,
            "total_recycles": self.total_recycles,
            "total_exhausted": self.total_exhausted,
            "total_reclaims": self.total_reclaims,
        }

    def _take_idle(self) -> PoolResource | None:
        for resource in self._resources.values():
            if not resource.busy and not resource.recycle_requested:
                return resource
        return None

    def _lease(self, resource: PoolResource) -> PoolLease:
        now = time.monotonic()
        resource.busy = True
        resource.last_used_at = now
        lease = PoolLease(resource=resource, generation=resource.generation, acquired_at=now)
        resource.lease = lease
        self.total_acquired += 1
        return lease

    def _settle_lease(self, lease: PoolLease, action: str) -> bool:
        if not lease.active:
            self.log.warning("Ignoring %s of inactive lease on handle %d (already settled or reclaimed)", action, lease.resource.id)
            return False
        lease.settled = True
        lease.resource.lease = None
        return True

    async def _settle(self, resource: PoolResource, recycle: bool, reason: str) -> None:
        """Bring a busy slot without lease back to idle, recycling or discarding it as needed."""
        if resource.id not in self._resources:
            return

        if resource.recycle_requested:
            recycle = True
            reason = "requested"

        if len(self._resources) > self.size or not self._started:
            await self._discard(resource)
            return

        if not recycle:
            try:
                await self._engine.reset_handle(resource.handle)
            except Exception as e:  # noqa: BLE001
                self.log.warning("Failed to reset handle %d: %s, recycling", resource.id, e)
                recycle = True
                reason = "reset_failed"

        if recycle and not await self._recycle_handle(resource, reason):
            return

        self._mark_idle(resource)

    async def _recycle_handle(self, resource: PoolResource, reason: str) -> bool:
        await self._engine.destroy_handle(resource.handle)
        try:
            resource.handle = await self._engine.create_handle()
        except Exception as e:  # noqa: BLE001
            self.log.error("Failed to recreate handle %d after %s: %s, dropping it from the pool", resource.id, reason, e)
            self._resources.pop(resource.id, None)
            self._wake_next_waiter()
            return False

        resource.generation += 1
        resource.created_at = time.monotonic()
        resource.recycle_requested = False
        self.total_recycles += 1
        prometheus_metrics.pool_recycles_total.labels(reason=reason).inc()
        self.log.debug("Handle %d recycled (reason: %s, generation: %d)", resource.id, reason, resource.generation)
        return True

    async def _discard(self, resource: PoolResource) -> None:
        self._resources.pop(resource.id, None)
        resource.lease = None
        await self._engine.destroy_handle(resource.handle)
        self.log.debug("Handle %d discarded (pool total: %d)", resource.id, self.total)
        self._wake_next_waiter()

    def _mark_idle(self, resource: PoolResource) -> None:
        resource.busy = False
        resource.last_used_at = time.monotonic()
        self._wake_next_waiter()

    async def _create_resource(self) -> PoolResource:
        self._pending += 1
        try:
            handle = await self._engine.create_handle()
        except EngineError:
            raise
        except Exception as e:
            raise EngineError(f"Failed to create rendering handle: {e}") from e
        finally:
            self._pending -= 1

        resource = PoolResource(id=next(self._ids), handle=handle)
        self._resources[resource.id] = resource
        return resource

    def _wake_next_waiter(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    def _exhausted(self, message: str) -> PoolExhausted:
        self.total_exhausted += 1
        prometheus_metrics.pool_exhausted_total.inc()
        self.log.warning("%s (busy: %d, capacity: %d)", message, self.busy_count, self.capacity)
        return PoolExhausted(message)

    async def _maintenance_loop(self) -> None:
        """
        Background task running the hold-time watchdog and the idle cleanup.

        The loop exits when _shutdown_event is set.
        """
        self.log.info("Pool maintenance loop started (interval: %.1fs)", self.maintenance_interval)
        try:
            while not self._shutdown_event.is_set():
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.maintenance_interval)
                    break
                except TimeoutError:
                    pass

                try:
                    reclaimed = await self.reclaim_stale()
                    recycled = await self.cleanup_idle()
                    if reclaimed or recycled:
                        self.log.info("Pool maintenance: %d handle(s) reclaimed, %d idle handle(s) recycled", reclaimed, recycled)
                except Exception as e:  # noqa: BLE001
                    self.log.error("Pool maintenance failed: %s", e)

        except asyncio.CancelledError:
            self.log.info("Pool maintenance loop cancelled")
            raise
        finally:
            self.log.info("Pool maintenance loop stopped")
