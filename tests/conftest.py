"""Pytest configuration and fixtures for render-service tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from render_service.chromium_engine import OUTPUT_SIGNATURES
from render_service.config import RenderServiceConfig, Settings
from render_service.context import RenderContext
from render_service.render_request import RenderOptions, RenderRequest

MB = 1024 * 1024


@dataclass
class FakeHandle:
    id: int
    closed: bool = False


class FakeEngine:
    """
    In-memory RenderEngine.

    Output is the format signature followed by the request fingerprint, so equal
    requests yield equal bytes. Renders can be delayed, blocked on a gate event
    or made to raise queued exceptions.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.gate: asyncio.Event | None = None
        self.failures: list[BaseException] = []
        self.fail_create = False
        self.fail_reset = False
        self.running = False

        self.render_calls = 0
        self.active_renders = 0
        self.max_active_renders = 0
        self.created = 0
        self.destroyed = 0
        self.resets = 0
        self.rendered_handles: list[int] = []

    async def start(self) -> None:
        self.running = True

    async def stop(self) -> None:
        self.running = False

    def is_running(self) -> bool:
        return self.running

    def health_check(self) -> bool:
        return self.running

    def get_version(self) -> str | None:
        return "131.0.6778.69" if self.running else None

    async def create_handle(self) -> FakeHandle:
        if self.fail_create:
            raise RuntimeError("browser gone")
        self.created += 1
        return FakeHandle(id=self.created)

    async def reset_handle(self, handle: FakeHandle) -> None:
        if self.fail_reset:
            raise RuntimeError("reset failed")
        self.resets += 1

    async def destroy_handle(self, handle: FakeHandle) -> None:
        handle.closed = True
        self.destroyed += 1

    async def render(self, handle: FakeHandle, request: RenderRequest) -> bytes:
        assert not handle.closed
        self.render_calls += 1
        self.active_renders += 1
        self.max_active_renders = max(self.max_active_renders, self.active_renders)
        self.rendered_handles.append(handle.id)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.failures:
                raise self.failures.pop(0)
            return OUTPUT_SIGNATURES[request.options.format] + request.fingerprint.encode()
        finally:
            self.active_renders -= 1


def make_request(content: str = "<h1>Hello</h1>", **options: Any) -> RenderRequest:
    return RenderRequest(content=content, options=RenderOptions(**options))


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Build Settings with a temporary cache directory and small timeouts."""

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "pool_size": 2,
            "pool_min_size": 1,
            "pool_max_overflow": 0,
            "max_concurrent_jobs": 2,
            "acquire_timeout": 2.0,
            "render_timeout": 2.0,
            "request_timeout": 5.0,
            "max_render_retries": 1,
            "pool_maintenance_interval": 60.0,
            "cache_dir": tmp_path / "cache",
            "memory_cooldown": 0.0,
        }
        values.update(overrides)
        return Settings(RenderServiceConfig(**values))

    return _make


@pytest.fixture
def make_context(make_settings: Callable[..., Settings], fake_engine: FakeEngine) -> Callable[..., RenderContext]:
    """Build a RenderContext around the fake engine with a fixed memory sample."""

    def _make(sample_bytes: int = 100 * MB, **overrides: Any) -> RenderContext:
        return RenderContext(make_settings(**overrides), engine=fake_engine, sampler=lambda: sample_bytes)

    return _make
