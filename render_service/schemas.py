from pydantic import BaseModel, Field


class VersionSchema(BaseModel):
    """Schema for response /version"""

    python: str = Field(title="Python", description="Python version")
    playwright: str | None = Field(title="Playwright", description="Playwright version")
    renderService: str | None = Field(title="Render Service", description="Service version")
    timestamp: str | None = Field(title="Build Timestamp", description="Build timestamp")
    chromium: str | None = Field(title="Chromium", description="Chromium version")


class ErrorSchema(BaseModel):
    """Schema for error responses"""

    error: str = Field(title="Error", description="Human readable error message")
    kind: str | None = Field(None, title="Kind", description="Stable error name, e.g. ValidationError or RenderTimeout")
    id: str | None = Field(None, title="Job ID", description="Job identifier when the error concerns an accepted job")


class JobAcceptedSchema(BaseModel):
    """Schema for the 202 response of asynchronous submissions"""

    id: str = Field(title="Job ID", description="Opaque job identifier")
    state: str = Field(title="State", description="queued, running, completed or failed")
    status_url: str = Field(title="Status URL", description="URL to poll for the job status")


class JobSchema(BaseModel):
    """Schema for response /job/{id}"""

    id: str = Field(title="Job ID", description="Opaque job identifier")
    state: str = Field(title="State", description="queued, running, completed or failed")
    fingerprint: str = Field(title="Fingerprint", description="Content fingerprint of the request")
    format: str = Field(title="Format", description="Requested output format")
    cached: bool = Field(title="Cached", description="Whether the result was served from the content cache")
    attempts: int = Field(title="Attempts", description="Number of render attempts made")
    created_at: float = Field(title="Created At", description="Submission time (epoch seconds)")
    started_at: float | None = Field(None, title="Started At", description="Time the job started running (epoch seconds)")
    completed_at: float | None = Field(None, title="Completed At", description="Time the job reached a terminal state (epoch seconds)")
    error: ErrorSchema | None = Field(None, title="Error", description="Failure cause of a failed job")
    result: str | None = Field(None, title="Result", description="URL of the rendered bytes once completed")


class PoolHealthSchema(BaseModel):
    """Schema for the resource pool snapshot"""

    size: int = Field(title="Size", description="Current target number of rendering handles")
    target_size: int = Field(0, title="Target Size", description="Configured number of handles restored after memory relief")
    capacity: int = Field(title="Capacity", description="Maximum number of handles including overflow")
    total: int = Field(title="Total", description="Current number of handles")
    busy: int = Field(title="Busy", description="Handles currently leased")
    idle: int = Field(title="Idle", description="Handles available for acquisition")
    waiting: int = Field(title="Waiting", description="Callers waiting for a handle")
    acquire_policy: str = Field(title="Acquire Policy", description="block or fail")
    total_recycles: int = Field(title="Total Recycles", description="Handles recycled since startup")
    total_exhausted: int = Field(title="Total Exhausted", description="Failed acquisitions since startup")
    total_reclaims: int = Field(title="Total Reclaims", description="Handles reclaimed by the hold-time watchdog")


class CacheHealthSchema(BaseModel):
    """Schema for the content cache snapshot"""

    items: int = Field(title="Items", description="Entries in the Tier-1 cache")
    bytes: int = Field(title="Bytes", description="Bytes held by the Tier-1 cache")
    max_items: int = Field(title="Max Items", description="Tier-1 item budget")
    max_bytes: int = Field(title="Max Bytes", description="Tier-1 byte budget")
    memory_hits: int = Field(title="Memory Hits", description="Tier-1 hits since startup")
    disk_hits: int = Field(title="Disk Hits", description="Tier-2 hits since startup")
    misses: int = Field(title="Misses", description="Cache misses since startup")
    write_failures: int = Field(title="Write Failures", description="Failed Tier-2 writes since startup")
    hit_rate_percent: float = Field(title="Hit Rate (%)", description="Cache hit rate as percentage")


class SchedulerHealthSchema(BaseModel):
    """Schema for the job scheduler snapshot"""

    queued: int = Field(title="Queued", description="Jobs waiting to run")
    running: int = Field(title="Running", description="Jobs currently rendering")
    jobs: int = Field(title="Jobs", description="Jobs retained for polling")
    max_concurrent_jobs: int = Field(title="Max Concurrent Jobs", description="Admission ceiling")
    total_submitted: int = Field(title="Total Submitted", description="Submissions since startup")
    total_completed: int = Field(title="Total Completed", description="Renders completed since startup")
    total_failed: int = Field(title="Total Failed", description="Renders failed since startup")
    total_coalesced: int = Field(title="Total Coalesced", description="Submissions joined to an in-flight job")
    total_cache_hits: int = Field(title="Total Cache Hits", description="Submissions served from cache")


class MemoryHealthSchema(BaseModel):
    """Schema for the memory monitor snapshot"""

    rss_bytes: int = Field(title="RSS (bytes)", description="Last sampled RSS of the worker and its children")
    limit_bytes: int = Field(title="Limit (bytes)", description="Configured memory threshold")
    level: int = Field(title="Relief Level", description="0 = normal, 1 = cache cleared, 2 = pool shrunk")
    usage_percent: float = Field(title="Usage (%)", description="RSS as percentage of the limit")


class HealthSchema(BaseModel):
    """Schema for detailed health status response"""

    status: str = Field(title="Status", description="Overall health status: healthy or unhealthy")
    version: str = Field(title="Version", description="Render service version")
    worker: str = Field(title="Worker", description="Worker process identifier")
    uptime_seconds: float = Field(title="Uptime (seconds)", description="Worker uptime in seconds")
    chromium_running: bool = Field(title="Chromium Running", description="Whether Chromium browser is running")
    chromium_version: str | None = Field(title="Chromium Version", description="Chromium version if available")
    memory: MemoryHealthSchema = Field(title="Memory", description="Memory monitor snapshot")
    pool: PoolHealthSchema = Field(title="Pool", description="Resource pool snapshot")
    cache: CacheHealthSchema = Field(title="Cache", description="Content cache snapshot")
    scheduler: SchedulerHealthSchema = Field(title="Scheduler", description="Job scheduler snapshot")
