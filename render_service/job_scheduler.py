"""
Job admission and execution.

Every render goes through a Job. Cache hits complete immediately without
touching the pool; misses are queued in arrival order and picked up by a fixed
number of worker tasks, which is the global admission ceiling. Identical
requests submitted while a job for the same fingerprint is still in flight are
joined to that job instead of rendering twice.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING
from uuid import uuid4

from render_service import prometheus_metrics
from render_service.errors import EngineError, InvalidJobTransition, RenderServiceError, RenderTimeout, ShutdownError

if TYPE_CHECKING:
    from render_service.chromium_engine import RenderEngine
    from render_service.config import Settings
    from render_service.content_cache import ContentCache
    from render_service.render_request import RenderRequest
    from render_service.resource_pool import ResourcePool


class JobState(str, Enum):
    """Lifecycle states of a render job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.RUNNING, JobState.FAILED}),
    JobState.RUNNING: frozenset({JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


@dataclass(eq=False)
class Job:
    """
    Mutable record of one render, owned by the JobScheduler.

    Attributes:
        request: The immutable request being rendered.
        id: Opaque job identifier returned to clients.
        fingerprint: Cache key of the request.
        state: Current lifecycle state; transitions are monotonic.
        created_at: Wall-clock submission time.
        started_at: Wall-clock time the job started running.
        completed_at: Wall-clock time the job reached a terminal state.
        result: Rendered bytes once completed.
        error: Failure cause once failed.
        attempts: Number of render attempts made.
        cached: True if the job was served from the content cache.
        retained: Kept for polling after it finishes; false for synchronous-only jobs.
    """

    request: RenderRequest
    id: str = field(default_factory=lambda: uuid4().hex)
    fingerprint: str = ""
    state: JobState = JobState.QUEUED
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    result: bytes | None = None
    error: RenderServiceError | None = None
    attempts: int = 0
    cached: bool = False
    retained: bool = True
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def __post_init__(self) -> None:
        if not self.fingerprint:
            self.fingerprint = self.request.fingerprint

    @classmethod
    def from_cache(cls, request: RenderRequest, result: bytes) -> Job:
        now = time.time()
        job = cls(request=request, state=JobState.COMPLETED, result=result, cached=True, started_at=now, completed_at=now)
        job._done.set()
        return job

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error is not None else None

    def mark_running(self) -> None:
        self._transition(JobState.RUNNING)
        self.started_at = time.time()

    def complete(self, result: bytes) -> None:
        self._transition(JobState.COMPLETED)
        self.result = result
        self._finish()

    def fail(self, error: RenderServiceError) -> None:
        self._transition(JobState.FAILED)
        self.error = error
        self._finish()

    async def wait(self) -> Job:
        await self._done.wait()
        return self

    def _transition(self, new_state: JobState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidJobTransition(f"Job {self.id}: cannot go from {self.state.value} to {new_state.value}")
        self.state = new_state

    def _finish(self) -> None:
        self.completed_at = time.time()
        self._done.set()


class JobScheduler:
    """
    FIFO admission of render jobs against the resource pool.

    max_concurrent_jobs worker tasks consume the queue, so at most that many
    jobs are running at any time and queued jobs start in submission order.
    """

    def __init__(
        self,
        pool: ResourcePool,
        cache: ContentCache,
        engine: RenderEngine,
        settings: Settings,
        logger: logging.Logger | None = None,
    ) -> None:
        self.log = logger or logging.getLogger(__name__)
        self._pool = pool
        self._cache = cache
        self._engine = engine

        self.max_concurrent_jobs = settings.max_concurrent_jobs
        self.render_timeout = settings.render_timeout
        self.max_render_retries = settings.max_render_retries
        self.request_timeout = settings.request_timeout
        self.job_retention_seconds = settings.job_retention_seconds

        self._jobs: dict[str, Job] = {}
        self._inflight: dict[str, Job] = {}
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._retention_task: asyncio.Task | None = None
        self._running = 0
        self._started = False

        self.total_submitted = 0
        self.total_completed = 0
        self.total_failed = 0
        self.total_coalesced = 0
        self.total_cache_hits = 0

    async def start(self) -> None:
        """Spawn the worker tasks and the retention sweep."""
        if self._started:
            self.log.warning("Job scheduler already started")
            return

        self._workers = [asyncio.create_task(self._worker(index), name=f"render-worker-{index}") for index in range(self.max_concurrent_jobs)]
        self._retention_task = asyncio.create_task(self._retention_loop(), name="job-retention")
        self._started = True
        self.log.info("Job scheduler started (admission ceiling: %d, render timeout: %.1fs, retries: %d)", self.max_concurrent_jobs, self.render_timeout, self.max_render_retries)

    async def stop(self) -> None:
        """Cancel workers and fail every job that did not finish."""
        if not self._started:
            return

        self._started = False
        tasks = [*self._workers]
        if self._retention_task is not None:
            tasks.append(self._retention_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._retention_task = None

        while not self._queue.empty():
            job = self._queue.get_nowait()
            job.fail(ShutdownError("Scheduler stopped before the job could run"))
            self._queue.task_done()
        self._inflight.clear()
        self.log.info("Job scheduler stopped")

    def is_running(self) -> bool:
        return self._started

    async def submit(self, request: RenderRequest, retain: bool = True) -> Job:
        """
        Submit a render request.

        Args:
            request: The request to render.
            retain: Keep the job pollable after it finishes. Synchronous callers pass
                False and hand the job back with release() once they have the result.

        Returns:
            A completed job on cache hit, the in-flight job for an identical request,
            or a newly queued job.
        """
        if not self._started:
            raise RuntimeError("Job scheduler not started. Call start() first.")

        self.total_submitted += 1
        fingerprint = request.fingerprint

        existing = self._join_inflight(fingerprint, retain)
        if existing is not None:
            return existing

        cached = await self._cache.get(fingerprint)
        if cached is not None:
            return self._cache_hit(request, cached, retain)

        # An identical job may have been queued or finished while Tier-2 was consulted
        existing = self._join_inflight(fingerprint, retain)
        if existing is not None:
            return existing
        cached = self._cache.memory.get(fingerprint)
        if cached is not None:
            return self._cache_hit(request, cached, retain)

        job = Job(request=request, fingerprint=fingerprint, retained=retain)
        self._jobs[job.id] = job
        self._inflight[fingerprint] = job
        self._queue.put_nowait(job)
        self.log.debug("Job %s queued (fingerprint: %s, queue size: %d)", job.id, fingerprint[:12], self._queue.qsize())
        return job

    def poll(self, job_id: str, consume: bool = False) -> Job | None:
        """
        Non-blocking status read.

        Args:
            job_id: Identifier returned by submit().
            consume: Forget the job after reading it if it reached a terminal state.
        """
        job = self._jobs.get(job_id)
        if job is not None and consume and job.is_terminal:
            self._jobs.pop(job_id, None)
        return job

    async def wait(self, job: Job, timeout: float | None = None) -> Job:
        """
        Wait for a job to reach a terminal state.

        Raises:
            TimeoutError: If the timeout elapses first. The job keeps running.
        """
        return await asyncio.wait_for(job.wait(), timeout=timeout if timeout is not None else self.request_timeout)

    async def run(self, request: RenderRequest, timeout: float | None = None) -> Job:
        """
        Submit a request and wait for its terminal state (synchronous mode).

        The finished job is not kept for polling. On timeout it is retained so the
        caller can hand out its id.
        """
        job = await self.submit(request, retain=False)
        try:
            await self.wait(job, timeout)
        except TimeoutError:
            self.retain(job)
            raise
        self.release(job)
        return job

    def retain(self, job: Job) -> None:
        """Keep a job pollable until it is consumed or expires."""
        job.retained = True
        self._jobs.setdefault(job.id, job)

    def release(self, job: Job) -> bool:
        """Forget a finished job that nobody is going to poll. Returns True if forgotten."""
        if not job.is_terminal or job.retained:
            return False
        self._jobs.pop(job.id, None)
        return True

    def purge_expired(self) -> int:
        """Forget terminal jobs older than the retention window."""
        cutoff = time.time() - self.job_retention_seconds
        expired = [job_id for job_id, job in self._jobs.items() if job.is_terminal and job.completed_at is not None and job.completed_at < cutoff]
        for job_id in expired:
            del self._jobs[job_id]
        return len(expired)

    def stats(self) -> dict[str, int]:
        return {
            "queued": self._queue.qsize(),
            "running": self._running,
            "jobs": len(self._jobs),
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "total_submitted": self.total_submitted,
            "total_completed": self.total_completed,
            "total_failed": self.total_failed,
            "total_coalesced": self.total_coalesced,
            "total_cache_hits": self.total_cache_hits,
        }

    def _cache_hit(self, request: RenderRequest, result: bytes, retain: bool) -> Job:
        job = Job.from_cache(request, result)
        job.retained = retain
        if retain:
            self._jobs[job.id] = job
        self.total_cache_hits += 1
        self.log.debug("Job %s served from cache (fingerprint: %s)", job.id, job.fingerprint[:12])
        return job

    def _join_inflight(self, fingerprint: str, retain: bool) -> Job | None:
        job = self._inflight.get(fingerprint)
        if job is None or job.is_terminal:
            return None
        job.retained = job.retained or retain
        self.total_coalesced += 1
        prometheus_metrics.jobs_coalesced_total.inc()
        self.log.debug("Request joined in-flight job %s (fingerprint: %s)", job.id, fingerprint[:12])
        return job

    async def _worker(self, index: int) -> None:
        self.log.debug("Render worker %d started", index)
        while True:
            job = await self._queue.get()
            try:
                await self._execute(job)
            finally:
                self._queue.task_done()

    async def _execute(self, job: Job) -> None:
        prometheus_metrics.queue_time_seconds.observe(max(0.0, time.time() - job.created_at))
        job.mark_running()
        self._running += 1
        try:
            result = await self._render_with_retries(job)
        except asyncio.CancelledError:
            job.fail(ShutdownError("Scheduler stopped while the job was running"))
            raise
        except RenderServiceError as e:
            job.fail(e)
            self.total_failed += 1
            prometheus_metrics.render_failures_total.labels(kind=e.kind).inc()
            self.log.error("Job %s failed after %d attempt(s): %s: %s", job.id, job.attempts, e.kind, e.message)
        else:
            # The cache must hold the result before the job is observable as completed
            self._cache.put(job.fingerprint, result)
            job.complete(result)
            self.total_completed += 1
            prometheus_metrics.renders_total.labels(format=job.request.options.format).inc()
            self.log.info("Job %s completed (%d bytes, %d attempt(s))", job.id, len(result), job.attempts)
        finally:
            self._running -= 1
            if self._inflight.get(job.fingerprint) is job:
                del self._inflight[job.fingerprint]

    async def _render_with_retries(self, job: Job) -> bytes:
        attempts = self.max_render_retries + 1
        last_error: RenderServiceError | None = None

        for attempt in range(attempts):
            job.attempts = attempt + 1
            if attempt:
                prometheus_metrics.render_retries_total.inc()
            try:
                return await self._render_once(job.request)
            except RenderServiceError as e:
                if not e.retryable:
                    raise
                last_error = e
            except Exception as e:
                last_error = EngineError(f"Unexpected render failure: {e}")
                last_error.__cause__ = e
            self.log.warning("Render of job %s failed (attempt %d/%d): %s: %s", job.id, attempt + 1, attempts, last_error.kind, last_error.message)

        if last_error is None:
            raise EngineError("Render failed without an error")
        raise last_error

    async def _render_once(self, request: RenderRequest) -> bytes:
        start_time = time.monotonic()
        async with self._pool.lease() as lease:
            try:
                data = await asyncio.wait_for(self._engine.render(lease.handle, request), timeout=self.render_timeout)
            except TimeoutError:
                raise RenderTimeout(f"Render exceeded {self.render_timeout}s") from None
        prometheus_metrics.render_duration_seconds.observe(time.monotonic() - start_time)
        return data

    async def _retention_loop(self) -> None:
        interval = min(self.job_retention_seconds, 60.0)
        while True:
            await asyncio.sleep(interval)
            purged = self.purge_expired()
            if purged:
                self.log.debug("Purged %d expired job(s)", purged)
