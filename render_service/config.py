"""
Configuration of the render service core.

All tunables live in a single RenderServiceConfig dataclass. A field left as
None is read from its environment variable; every value is validated against
its bounds and falls back to the default (with a warning) when out of range.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

ACQUIRE_POLICY_BLOCK = "block"
ACQUIRE_POLICY_FAIL = "fail"

DEFAULT_BLOCKED_RESOURCE_TYPES = ("image", "stylesheet", "font", "script", "media")


@dataclass
class RenderServiceConfig:
    """
    Raw configuration settings for the render service.

    Attributes:
        pool_size: Number of rendering handles kept open (1-100, default 5).
        pool_min_size: Lower bound for shrink() (0-100, default 1).
        pool_max_size: Upper bound for grow() (1-200, default 20).
        pool_max_overflow: Extra handles created lazily under saturation (0-100, default 2).
        acquire_policy: "block" waits for a free handle, "fail" raises PoolExhausted at once.
        acquire_timeout: Seconds to wait for a handle in block mode (default 30).
        idle_recycle_seconds: Idle handles older than this are recycled (default 300).
        max_hold_seconds: Watchdog limit for a single acquisition (default 120).
        pool_maintenance_interval: Seconds between idle cleanup / watchdog runs (default 30).
        max_concurrent_jobs: Admission ceiling for running jobs (1-100, default 5).
        render_timeout: Per-render timeout in seconds (default 15).
        max_render_retries: Automatic retries for transient failures (0-5, default 1).
        request_timeout: Overall timeout for synchronous requests in seconds (default 30).
        job_retention_seconds: How long terminal jobs stay pollable (default 300).
        memory_cache_max_items: Tier-1 item bound (default 200).
        memory_cache_max_bytes: Tier-1 byte budget (default 256 MiB).
        memory_cache_ttl: Tier-1 time to live in seconds (default 3600).
        cache_dir: Tier-2 directory (default ./cache).
        disk_cache_retention: Tier-2 retention window in seconds (default 24h).
        cache_cleanup_interval: Seconds between expiry sweeps (default 3600).
        memory_limit_mb: Resident memory threshold in MB (default 512).
        memory_check_interval: Seconds between memory samples (default 60).
        memory_cooldown: Seconds to wait before escalating memory relief (default 30).
        device_scale_factor: Device scale factor used by the engine (1.0-10.0, default 1.0).
        javascript_enabled: Run page scripts while rendering (default False).
        blocked_resource_types: Sub-resource types aborted by every handle.
    """

    pool_size: int | None = None
    pool_min_size: int | None = None
    pool_max_size: int | None = None
    pool_max_overflow: int | None = None
    acquire_policy: str | None = None
    acquire_timeout: float | None = None
    idle_recycle_seconds: float | None = None
    max_hold_seconds: float | None = None
    pool_maintenance_interval: float | None = None
    max_concurrent_jobs: int | None = None
    render_timeout: float | None = None
    max_render_retries: int | None = None
    request_timeout: float | None = None
    job_retention_seconds: float | None = None
    memory_cache_max_items: int | None = None
    memory_cache_max_bytes: int | None = None
    memory_cache_ttl: float | None = None
    cache_dir: str | Path | None = None
    disk_cache_retention: float | None = None
    cache_cleanup_interval: float | None = None
    memory_limit_mb: int | None = None
    memory_check_interval: float | None = None
    memory_cooldown: float | None = None
    device_scale_factor: float | None = None
    javascript_enabled: bool | None = None
    blocked_resource_types: tuple[str, ...] | None = None


class Settings:
    """
    Validated view over RenderServiceConfig.

    Every attribute is guaranteed to be set and within bounds after __init__.
    """

    def __init__(self, config: RenderServiceConfig | None = None, logger: logging.Logger | None = None) -> None:
        self.log = logger or logging.getLogger(__name__)
        if config is None:
            config = RenderServiceConfig()

        self.pool_size = self._validate_int_config(config.pool_size, "POOL_SIZE", 5, 1, 100)
        self.pool_min_size = self._validate_int_config(config.pool_min_size, "POOL_MIN_SIZE", 1, 0, 100)
        self.pool_max_size = self._validate_int_config(config.pool_max_size, "POOL_MAX_SIZE", 20, 1, 200)
        self.pool_max_overflow = self._validate_int_config(config.pool_max_overflow, "POOL_MAX_OVERFLOW", 2, 0, 100)
        self.acquire_policy = self._validate_acquire_policy(config.acquire_policy)
        self.acquire_timeout = self._validate_float_config(config.acquire_timeout, "POOL_ACQUIRE_TIMEOUT", 30.0, 0.01, 600.0)
        self.idle_recycle_seconds = self._validate_float_config(config.idle_recycle_seconds, "POOL_IDLE_RECYCLE_SECONDS", 300.0, 0.01, 86400.0)
        self.max_hold_seconds = self._validate_float_config(config.max_hold_seconds, "POOL_MAX_HOLD_SECONDS", 120.0, 0.01, 3600.0)
        self.pool_maintenance_interval = self._validate_float_config(config.pool_maintenance_interval, "POOL_MAINTENANCE_INTERVAL", 30.0, 0.01, 3600.0)
        self.max_concurrent_jobs = self._validate_int_config(config.max_concurrent_jobs, "MAX_CONCURRENT_JOBS", 5, 1, 100)
        self.render_timeout = self._validate_float_config(config.render_timeout, "RENDER_TIMEOUT", 15.0, 0.01, 300.0)
        self.max_render_retries = self._validate_int_config(config.max_render_retries, "RENDER_MAX_RETRIES", 1, 0, 5)
        self.request_timeout = self._validate_float_config(config.request_timeout, "REQUEST_TIMEOUT", 30.0, 0.01, 600.0)
        self.job_retention_seconds = self._validate_float_config(config.job_retention_seconds, "JOB_RETENTION_SECONDS", 300.0, 0.01, 86400.0)
        self.memory_cache_max_items = self._validate_int_config(config.memory_cache_max_items, "MEMORY_CACHE_MAX_ITEMS", 200, 1, 100_000)
        self.memory_cache_max_bytes = self._validate_int_config(config.memory_cache_max_bytes, "MEMORY_CACHE_MAX_BYTES", 256 * 1024 * 1024, 1024, 16 * 1024**3)
        self.memory_cache_ttl = self._validate_float_config(config.memory_cache_ttl, "MEMORY_CACHE_TTL", 3600.0, 0.01, 604800.0)
        self.cache_dir = Path(config.cache_dir or os.environ.get("CACHE_DIR", "./cache"))
        self.disk_cache_retention = self._validate_float_config(config.disk_cache_retention, "DISK_CACHE_RETENTION", 86400.0, 0.01, 2592000.0)
        self.cache_cleanup_interval = self._validate_float_config(config.cache_cleanup_interval, "CACHE_CLEANUP_INTERVAL", 3600.0, 0.01, 86400.0)
        self.memory_limit_mb = self._validate_int_config(config.memory_limit_mb, "MEMORY_LIMIT_MB", 512, 16, 1024 * 1024)
        self.memory_check_interval = self._validate_float_config(config.memory_check_interval, "MEMORY_CHECK_INTERVAL", 60.0, 0.01, 3600.0)
        self.memory_cooldown = self._validate_float_config(config.memory_cooldown, "MEMORY_COOLDOWN", 30.0, 0.0, 3600.0)
        self.device_scale_factor = self._validate_float_config(config.device_scale_factor, "DEVICE_SCALE_FACTOR", 1.0, 1.0, 10.0)
        self.javascript_enabled = self._validate_bool_config(config.javascript_enabled, "RENDER_JAVASCRIPT_ENABLED", default=False)
        self.blocked_resource_types = self._validate_blocked_resource_types(config.blocked_resource_types)

        if self.pool_min_size > self.pool_size:
            self.log.warning("POOL_MIN_SIZE (%d) is larger than POOL_SIZE (%d), using %d", self.pool_min_size, self.pool_size, self.pool_size)
            self.pool_min_size = self.pool_size
        if self.pool_max_size < self.pool_size:
            self.log.warning("POOL_MAX_SIZE (%d) is smaller than POOL_SIZE (%d), using %d", self.pool_max_size, self.pool_size, self.pool_size)
            self.pool_max_size = self.pool_size

        # The admission ceiling may never exceed what the pool can hand out
        capacity = self.pool_size + self.pool_max_overflow
        if self.max_concurrent_jobs > capacity:
            self.log.warning("MAX_CONCURRENT_JOBS (%d) exceeds pool capacity (%d), clamping", self.max_concurrent_jobs, capacity)
            self.max_concurrent_jobs = capacity

    @property
    def memory_limit_bytes(self) -> int:
        return self.memory_limit_mb * 1024 * 1024

    def _validate_int_config(self, value: int | None, env_var: str, default: int, min_value: int, max_value: int) -> int:
        """
        Validate integer configuration parameters.

        Args:
            value: Value to validate or None to read from env.
            env_var: Environment variable name.
            default: Default value if env var not set or invalid.
            min_value: Minimum valid value (inclusive).
            max_value: Maximum valid value (inclusive).

        Returns:
            Validated integer configuration value.
        """
        if value is None:
            value = self._parse_int(os.environ.get(env_var), default)
        else:
            value = int(value)

        if not (min_value <= value <= max_value):
            self.log.warning("%s must be between %s and %s, using default: %s", env_var, min_value, max_value, default)
            return default

        return value

    def _validate_float_config(self, value: float | None, env_var: str, default: float, min_value: float, max_value: float) -> float:
        """
        Validate float configuration parameters.

        Args:
            value: Value to validate or None to read from env.
            env_var: Environment variable name.
            default: Default value if env var not set or invalid.
            min_value: Minimum valid value (inclusive).
            max_value: Maximum valid value (inclusive).

        Returns:
            Validated float configuration value.
        """
        if value is None:
            value = self._parse_float(os.environ.get(env_var), default)
        else:
            value = float(value)

        if not (min_value <= value <= max_value):
            self.log.warning("%s must be between %s and %s, using default: %s", env_var, min_value, max_value, default)
            return default

        return value

    @staticmethod
    def _validate_bool_config(value: bool | None, env_var: str, default: bool) -> bool:
        if value is not None:
            return bool(value)

        env_value = os.environ.get(env_var)
        if env_value is None:
            return default

        return env_value.lower() in ("true", "1", "yes", "on")

    def _validate_acquire_policy(self, value: str | None) -> str:
        policy = (value or os.environ.get("POOL_ACQUIRE_POLICY", ACQUIRE_POLICY_BLOCK)).strip().lower()
        if policy not in (ACQUIRE_POLICY_BLOCK, ACQUIRE_POLICY_FAIL):
            self.log.warning("POOL_ACQUIRE_POLICY must be '%s' or '%s', using default: %s", ACQUIRE_POLICY_BLOCK, ACQUIRE_POLICY_FAIL, ACQUIRE_POLICY_BLOCK)
            return ACQUIRE_POLICY_BLOCK
        return policy

    @staticmethod
    def _validate_blocked_resource_types(value: tuple[str, ...] | None) -> frozenset[str]:
        if value is not None:
            return frozenset(value)

        env_value = os.environ.get("BLOCKED_RESOURCE_TYPES")
        if env_value is None:
            return frozenset(DEFAULT_BLOCKED_RESOURCE_TYPES)

        return frozenset(part.strip().lower() for part in env_value.split(",") if part.strip())

    @staticmethod
    def _parse_float(value: str | None, default: float) -> float:
        """Parse a string to float with a default fallback."""
        try:
            return float(value) if value is not None else default
        except (ValueError, TypeError):
            return default

    @staticmethod
    def _parse_int(value: str | None, default: int) -> int:
        """Parse a string to int with a default fallback."""
        try:
            return int(value) if value is not None else default
        except (ValueError, TypeError):
            return default
