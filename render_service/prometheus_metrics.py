"""
Prometheus metrics collectors for the render service.

Counters and histograms are updated when events occur, from the pool, the
cache, the scheduler and the HTTP layer. Gauges are refreshed from the
RenderContext right before the metrics are served.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram, Info

if TYPE_CHECKING:
    from render_service.context import RenderContext


logger = logging.getLogger(__name__)


# HTTP layer
http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# Content cache
cache_hits_total = Counter(
    "cache_hits_total",
    "Total number of content cache hits",
    ["tier"],
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total number of content cache misses",
)

cache_write_failures_total = Counter(
    "cache_write_failures_total",
    "Total number of failed Tier-2 cache writes",
)

cache_hit_rate_percent = Gauge(
    "cache_hit_rate_percent",
    "Content cache hit rate as percentage",
)

cache_items = Gauge(
    "cache_items",
    "Current number of entries in the Tier-1 cache",
)

cache_bytes = Gauge(
    "cache_bytes",
    "Current number of bytes held by the Tier-1 cache",
)

# Renders and jobs
renders_total = Counter(
    "renders_total",
    "Total number of successful renders",
    ["format"],
)

render_failures_total = Counter(
    "render_failures_total",
    "Total number of failed render attempts",
    ["kind"],
)

render_retries_total = Counter(
    "render_retries_total",
    "Total number of automatic render retries",
)

render_duration_seconds = Histogram(
    "render_duration_seconds",
    "Render duration in seconds",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

queue_time_seconds = Histogram(
    "queue_time_seconds",
    "Time jobs spend queued before running",
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

jobs_coalesced_total = Counter(
    "jobs_coalesced_total",
    "Total number of submissions joined to an identical in-flight job",
)

jobs_queued = Gauge(
    "jobs_queued",
    "Current number of queued jobs",
)

jobs_running = Gauge(
    "jobs_running",
    "Current number of running jobs",
)

# Resource pool
pool_recycles_total = Counter(
    "pool_recycles_total",
    "Total number of rendering handle recycles",
    ["reason"],
)

pool_exhausted_total = Counter(
    "pool_exhausted_total",
    "Total number of failed pool acquisitions",
)

pool_watchdog_reclaims_total = Counter(
    "pool_watchdog_reclaims_total",
    "Total number of handles reclaimed after exceeding the maximum hold time",
)

pool_size = Gauge(
    "pool_size",
    "Current number of rendering handles",
)

pool_busy = Gauge(
    "pool_busy",
    "Current number of busy rendering handles",
)

pool_idle = Gauge(
    "pool_idle",
    "Current number of idle rendering handles",
)

pool_waiting = Gauge(
    "pool_waiting",
    "Current number of callers waiting for a rendering handle",
)

# Memory and process
memory_relief_total = Counter(
    "memory_relief_total",
    "Total number of memory relief actions",
    ["action"],
)

process_memory_bytes = Gauge(
    "process_memory_bytes",
    "Last sampled resident memory of the worker and its children in bytes",
)

memory_limit_bytes = Gauge(
    "memory_limit_bytes",
    "Configured resident memory threshold in bytes",
)

chromium_restarts_total = Counter(
    "chromium_restarts_total",
    "Total number of Chromium browser restarts",
)

uptime_seconds = Gauge(
    "uptime_seconds",
    "Service uptime in seconds",
)

chromium_info = Info(
    "chromium",
    "Chromium browser information",
)


def update_gauges_from_context(context: RenderContext) -> None:
    """
    Update Prometheus gauges from the current RenderContext state.

    Called before serving metrics. Only gauges are touched here; counters are
    incremented where the events happen.

    Args:
        context: RenderContext instance to collect metrics from
    """
    try:
        pool_stats = context.pool.stats()
        pool_size.set(float(pool_stats["total"]))
        pool_busy.set(float(pool_stats["busy"]))
        pool_idle.set(float(pool_stats["idle"]))
        pool_waiting.set(float(pool_stats["waiting"]))

        cache_stats = context.cache.stats()
        cache_items.set(float(cache_stats["items"]))
        cache_bytes.set(float(cache_stats["bytes"]))
        cache_hit_rate_percent.set(float(cache_stats["hit_rate_percent"]))

        scheduler_stats = context.scheduler.stats()
        jobs_queued.set(float(scheduler_stats["queued"]))
        jobs_running.set(float(scheduler_stats["running"]))

        process_memory_bytes.set(float(context.monitor.last_sample_bytes))
        memory_limit_bytes.set(float(context.monitor.limit_bytes))
        uptime_seconds.set(context.uptime_seconds())

        chromium_version = context.engine.get_version()
        if chromium_version:
            chromium_info.info({"version": chromium_version})

        logger.debug("Prometheus gauges updated from RenderContext")

    except Exception as e:
        logger.error("Failed to update Prometheus gauges: %s", e, exc_info=True)
