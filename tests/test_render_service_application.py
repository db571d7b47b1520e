import logging
import os
import subprocess
import sys

import pytest

from render_service import render_controller, render_service_application


@pytest.fixture(autouse=True)
def log_dir(monkeypatch, tmp_path):
    log_dir = tmp_path / "logs"
    monkeypatch.setenv("LOG_DIR", str(log_dir))
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.delenv("WORKERS", raising=False)
    yield log_dir

    # start_server_multi_worker exports both for gunicorn.conf.py
    os.environ.pop("PORT", None)
    os.environ.pop("WORKERS", None)
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


@pytest.fixture
def started(monkeypatch):
    """Record which server mode main() chooses instead of starting it."""
    calls = {}

    def fake_single(port):
        calls["single"] = {"port": port}

    def fake_multi(port, workers):
        calls["multi"] = {"port": port, "workers": workers}

    monkeypatch.setattr(render_service_application, "start_server_single_worker", fake_single)
    monkeypatch.setattr(render_service_application, "start_server_multi_worker", fake_multi)
    return calls


def test_main_defaults_to_single_worker(monkeypatch, started, log_dir):
    monkeypatch.setattr(sys, "argv", ["render_service_application.py"])

    render_service_application.main()

    assert started == {"single": {"port": 9080}}
    assert any(log_dir.glob("render-service_*.log"))


def test_main_with_workers_uses_gunicorn(monkeypatch, started):
    monkeypatch.setattr(sys, "argv", ["render_service_application.py", "--port", "9999", "--workers", "4"])

    render_service_application.main()

    assert started == {"multi": {"port": 9999, "workers": 4}}


def test_env_overrides_cli_args(monkeypatch, started):
    monkeypatch.setenv("PORT", "8888")
    monkeypatch.setenv("WORKERS", "2")
    monkeypatch.setattr(sys, "argv", ["render_service_application.py", "--port", "9999", "--workers", "1"])

    render_service_application.main()

    assert started == {"multi": {"port": 8888, "workers": 2}}


def test_invalid_env_values_fall_back_to_cli(monkeypatch, started):
    monkeypatch.setenv("PORT", "not-a-port")
    monkeypatch.setenv("WORKERS", "many")
    monkeypatch.setattr(sys, "argv", ["render_service_application.py", "--port", "9090", "--workers", "3"])

    render_service_application.main()

    assert started == {"multi": {"port": 9090, "workers": 3}}


def test_zero_workers_runs_single_worker(monkeypatch, started):
    monkeypatch.setenv("WORKERS", "0")
    monkeypatch.setattr(sys, "argv", ["render_service_application.py"])

    render_service_application.main()

    assert "single" in started


def test_single_worker_runs_uvicorn_with_app(monkeypatch):
    calls = []
    monkeypatch.setattr(render_service_application.uvicorn, "run", lambda **kwargs: calls.append(kwargs))

    render_service_application.start_server_single_worker(9081)

    assert calls == [{"app": render_controller.app, "host": "", "port": 9081}]


def test_multi_worker_runs_gunicorn(monkeypatch):
    commands = []
    exit_codes = []

    class FakeResult:
        returncode = 0

    def fake_run(cmd, check=True):  # noqa: ARG001
        commands.append(cmd)
        return FakeResult()

    monkeypatch.setattr(subprocess, "run", fake_run)
    monkeypatch.setattr(sys, "exit", exit_codes.append)

    render_service_application.start_server_multi_worker(port=8080, workers=2)

    assert commands == [["gunicorn", "render_service.render_controller:app", "--config", "gunicorn.conf.py"]]
    assert exit_codes == [0]


def test_multi_worker_passes_port_and_workers_via_env(monkeypatch):
    seen = {}

    class FakeResult:
        returncode = 0

    def fake_run(cmd, check=True):  # noqa: ARG001
        seen["PORT"] = os.environ.get("PORT")
        seen["WORKERS"] = os.environ.get("WORKERS")
        return FakeResult()

    monkeypatch.setattr(subprocess, "run", fake_run)
    monkeypatch.setattr(sys, "exit", lambda code: None)

    render_service_application.start_server_multi_worker(port=8080, workers=2)

    assert seen == {"PORT": "8080", "WORKERS": "2"}
