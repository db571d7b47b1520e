"""Error taxonomy shared by the pool, cache, scheduler and HTTP layer."""

from __future__ import annotations


class RenderServiceError(Exception):
    """
    Base class for all render service errors.

    Attributes:
        kind: Stable error name surfaced to clients and used as metrics label.
        retryable: Whether the scheduler may retry the render after this error.
        status_code: HTTP status used when the error reaches the boundary.
    """

    kind = "RenderServiceError"
    retryable = False
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.kind


class ValidationError(RenderServiceError):
    """Bad input. Rejected before touching the pool or the cache."""

    kind = "ValidationError"
    status_code = 400


class PoolExhausted(RenderServiceError):
    """No rendering handle became available within the acquisition policy."""

    kind = "PoolExhausted"
    retryable = True
    status_code = 503


class RenderTimeout(RenderServiceError):
    """A render exceeded its per-render budget."""

    kind = "RenderTimeout"
    retryable = True
    status_code = 504


class EngineError(RenderServiceError):
    """The rendering engine crashed or returned malformed output."""

    kind = "EngineError"
    retryable = True
    status_code = 502


class CacheWriteError(RenderServiceError):
    """Tier-2 persistence failed. Logged, never surfaced to clients."""

    kind = "CacheWriteError"


class ShutdownError(RenderServiceError):
    """The scheduler stopped before the job could run."""

    kind = "Shutdown"
    status_code = 503


class InvalidJobTransition(RenderServiceError):  # noqa: N818
    """A job state change violated the queued -> running -> terminal order."""

    kind = "InvalidJobTransition"
