import logging
from pathlib import Path

import pytest

from render_service.config import DEFAULT_BLOCKED_RESOURCE_TYPES, RenderServiceConfig, Settings

ENV_VARS = [
    "POOL_SIZE",
    "POOL_MIN_SIZE",
    "POOL_MAX_SIZE",
    "POOL_MAX_OVERFLOW",
    "POOL_ACQUIRE_POLICY",
    "MAX_CONCURRENT_JOBS",
    "RENDER_TIMEOUT",
    "RENDER_MAX_RETRIES",
    "CACHE_DIR",
    "MEMORY_LIMIT_MB",
    "RENDER_JAVASCRIPT_ENABLED",
    "BLOCKED_RESOURCE_TYPES",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for env_var in ENV_VARS:
        monkeypatch.delenv(env_var, raising=False)


def test_defaults():
    settings = Settings()

    assert settings.pool_size == 5
    assert settings.pool_min_size == 1
    assert settings.pool_max_size == 20
    assert settings.pool_max_overflow == 2
    assert settings.acquire_policy == "block"
    assert settings.max_concurrent_jobs == 5
    assert settings.render_timeout == 15.0
    assert settings.max_render_retries == 1
    assert settings.request_timeout == 30.0
    assert settings.cache_dir == Path("./cache")
    assert settings.memory_limit_bytes == 512 * 1024 * 1024
    assert settings.javascript_enabled is False
    assert settings.blocked_resource_types == frozenset(DEFAULT_BLOCKED_RESOURCE_TYPES)


def test_values_from_env(monkeypatch):
    monkeypatch.setenv("POOL_SIZE", "8")
    monkeypatch.setenv("POOL_ACQUIRE_POLICY", " FAIL ")
    monkeypatch.setenv("RENDER_TIMEOUT", "7.5")
    monkeypatch.setenv("CACHE_DIR", "/var/cache/render")
    monkeypatch.setenv("RENDER_JAVASCRIPT_ENABLED", "yes")
    monkeypatch.setenv("BLOCKED_RESOURCE_TYPES", "Image, font,,")

    settings = Settings()

    assert settings.pool_size == 8
    assert settings.acquire_policy == "fail"
    assert settings.render_timeout == 7.5
    assert settings.cache_dir == Path("/var/cache/render")
    assert settings.javascript_enabled is True
    assert settings.blocked_resource_types == frozenset({"image", "font"})


def test_explicit_values_win_over_env(monkeypatch):
    monkeypatch.setenv("POOL_SIZE", "8")

    settings = Settings(RenderServiceConfig(pool_size=3, blocked_resource_types=()))

    assert settings.pool_size == 3
    assert settings.blocked_resource_types == frozenset()


@pytest.mark.parametrize(
    ("env_var", "value", "attribute", "expected"),
    [
        ("POOL_SIZE", "0", "pool_size", 5),
        ("POOL_SIZE", "abc", "pool_size", 5),
        ("RENDER_TIMEOUT", "-1", "render_timeout", 15.0),
        ("RENDER_MAX_RETRIES", "9", "max_render_retries", 1),
        ("MEMORY_LIMIT_MB", "1", "memory_limit_mb", 512),
        ("POOL_ACQUIRE_POLICY", "wait", "acquire_policy", "block"),
    ],
)
def test_invalid_values_fall_back_to_default(monkeypatch, env_var, value, attribute, expected):
    monkeypatch.setenv(env_var, value)
    assert getattr(Settings(), attribute) == expected


def test_min_and_max_are_clamped_to_pool_size(caplog):
    with caplog.at_level(logging.WARNING, logger="render_service.config"):
        settings = Settings(RenderServiceConfig(pool_size=4, pool_min_size=10, pool_max_size=2))

    assert settings.pool_min_size == 4
    assert settings.pool_max_size == 4
    assert any("POOL_MIN_SIZE" in record.message for record in caplog.records)
    assert any("POOL_MAX_SIZE" in record.message for record in caplog.records)


def test_admission_ceiling_never_exceeds_pool_capacity(caplog):
    with caplog.at_level(logging.WARNING, logger="render_service.config"):
        settings = Settings(RenderServiceConfig(pool_size=2, pool_max_overflow=1, max_concurrent_jobs=10))

    assert settings.max_concurrent_jobs == 3
    assert any("exceeds pool capacity" in record.message for record in caplog.records)


def test_admission_ceiling_below_capacity_is_kept():
    settings = Settings(RenderServiceConfig(pool_size=4, pool_max_overflow=0, max_concurrent_jobs=2))
    assert settings.max_concurrent_jobs == 2
