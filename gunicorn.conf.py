"""
Gunicorn configuration for the render service with multi-worker support.

Each worker is an isolated Uvicorn worker with its own RenderContext: a Chromium
browser, a resource pool, a Tier-1 cache, a job scheduler and a memory monitor.
Workers share only the Tier-2 cache directory (CACHE_DIR).

Worker and shutdown timeouts are derived from the render settings so that the
master never kills a worker that is still inside a legitimate synchronous wait
or shutting its render context down:

    timeout          >= max(REQUEST_TIMEOUT, RENDER_TIMEOUT * (RENDER_MAX_RETRIES + 1)) + WORKER_TIMEOUT_MARGIN
    graceful_timeout >= REQUEST_TIMEOUT + CONTEXT_SHUTDOWN_ALLOWANCE

Environment Variables:
    WORKERS: Number of worker processes (default: 1)
    WORKER_TIMEOUT: Worker timeout in seconds, raised to the derived minimum
    GRACEFUL_TIMEOUT: Graceful shutdown timeout in seconds, raised to the derived minimum
    KEEP_ALIVE: Keep-alive timeout in seconds (default: 5)
    PORT: Service port (default: 9080)
    LOG_LEVEL: Log level (default: INFO)
    REQUEST_TIMEOUT, RENDER_TIMEOUT, RENDER_MAX_RETRIES: See render_service.config
"""

import math
import os
from typing import Any

from render_service.config import Settings

# Slack on top of the longest synchronous wait before the master declares a worker hung
WORKER_TIMEOUT_MARGIN = 30

# Memory monitor and pool maintenance stop (5s each), then Tier-2 flush and browser close
CONTEXT_SHUTDOWN_ALLOWANCE = 15


def derive_worker_timeout(settings: Settings) -> int:
    longest_render = settings.render_timeout * (settings.max_render_retries + 1)
    return math.ceil(max(settings.request_timeout, longest_render)) + WORKER_TIMEOUT_MARGIN


def derive_graceful_timeout(settings: Settings) -> int:
    return math.ceil(settings.request_timeout) + CONTEXT_SHUTDOWN_ALLOWANCE


def _at_least(env_var: str, minimum: int) -> int:
    value = os.getenv(env_var)
    return max(int(value), minimum) if value else minimum


render_settings = Settings()

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '9080')}"

# Worker processes
workers = int(os.getenv("WORKERS", "1"))
worker_class = "uvicorn.workers.UvicornWorker"

timeout = _at_least("WORKER_TIMEOUT", derive_worker_timeout(render_settings))
graceful_timeout = _at_least("GRACEFUL_TIMEOUT", derive_graceful_timeout(render_settings))

# Keep-alive (seconds to wait for requests on a Keep-Alive connection)
keepalive = int(os.getenv("KEEP_ALIVE", "5"))

# Logging
loglevel = os.getenv("LOG_LEVEL", "INFO").lower()
accesslog = "-"  # stdout
errorlog = "-"  # stderr
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

proc_name = "render-service"

# Chromium cannot survive a fork, each worker builds its RenderContext afterwards
preload_app = False


def on_starting(server: Any) -> None:
    """Called just before the master process is initialized."""
    server.log.info(
        "Starting Gunicorn with %d worker(s) (worker timeout: %ds, graceful timeout: %ds, pool size per worker: %d)",
        workers,
        timeout,
        graceful_timeout,
        render_settings.pool_size,
    )


def when_ready(server: Any) -> None:
    server.log.info("Gunicorn is ready. Listening on: %s", bind)


def worker_int(worker: Any) -> None:
    """Called when a worker receives SIGINT or SIGQUIT signal."""
    worker.log.info("Worker %s: received SIGINT/SIGQUIT, stopping render context", worker.pid)


def worker_abort(worker: Any) -> None:
    """Called when the master aborts a worker that exceeded the worker timeout."""
    worker.log.warning("Worker %s: aborted after %ds without heartbeat, its Chromium children go with it", worker.pid, timeout)


def post_fork(server: Any, worker: Any) -> None:
    server.log.info("Worker %s spawned (PID: %s)", worker.age, worker.pid)


def post_worker_init(worker: Any) -> None:
    """Called just after a worker has initialized the application."""
    from render_service.render_service_application import setup_logging

    setup_logging()
    worker.log.info("Worker %s: application initialized", worker.pid)


def worker_exit(server: Any, worker: Any) -> None:
    server.log.info("Worker %s exited", worker.pid)


def on_exit(server: Any) -> None:
    server.log.info("Shutting down: master process exiting")
