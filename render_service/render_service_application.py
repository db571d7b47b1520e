import argparse
import logging
import os
import subprocess
import sys
from datetime import datetime
from pathlib import Path

import uvicorn

from render_service import render_controller

DEFAULT_PORT = 9080
DEFAULT_WORKERS = 1


def setup_logging() -> Path:
    """
    Configure logging for the render service with both file and console output.

    The function:
    - Sets log level from LOG_LEVEL environment variable (defaults to INFO)
    - Creates timestamped log files in the LOG_DIR directory (defaults to /opt/render-service/logs)
    - Configures both file and console logging handlers
    - Uses format: timestamp - logger name - log level - message

    The log files are not rotated and a new file is created on each service start.

    Returns:
        Path: The path to the created log file
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = Path(os.getenv("LOG_DIR", "/opt/render-service/logs"))
    log_dir.mkdir(parents=True, exist_ok=True)

    current_time = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    log_file = log_dir / f"render-service_{current_time}.log"

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    file_handler = logging.FileHandler(
        log_file,
        encoding="utf-8",
        delay=False,  # Create file immediately
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    configured_level = getattr(logging, log_level, logging.INFO)  # Default to INFO if invalid
    root_logger.setLevel(configured_level)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Third-party loggers keep their own level unless told otherwise
    for logger_name in ["playwright", "uvicorn", "uvicorn.error", "asyncio"]:
        logging.getLogger(logger_name).setLevel(configured_level)

    root_logger.info("Logging initialized with level: %s", log_level)
    root_logger.info("Log file: %s", log_file)

    for handler in root_logger.handlers:
        handler.flush()

    return log_file


def start_server_single_worker(port: int) -> None:
    """Run one uvicorn worker in this process."""
    uvicorn.run(app=render_controller.app, host="", port=port)


def start_server_multi_worker(port: int, workers: int) -> None:
    """
    Run gunicorn as supervisor of several uvicorn workers.

    Every worker owns its own Chromium, pool and Tier-1 cache and shares the
    Tier-2 cache directory. Crashed workers are restarted by the gunicorn master.
    """
    os.environ["PORT"] = str(port)
    os.environ["WORKERS"] = str(workers)
    logging.info("Starting gunicorn with %d workers on port %d", workers, port)
    result = subprocess.run(["gunicorn", "render_service.render_controller:app", "--config", "gunicorn.conf.py"], check=True)  # noqa: S603, S607
    sys.exit(result.returncode)


def _int_from_env(name: str, fallback: int) -> int:
    value = os.getenv(name)
    if value is None:
        return fallback
    try:
        return int(value)
    except ValueError:
        logging.warning("Invalid %s value '%s', using %d", name, value, fallback)
        return fallback


def main() -> None:
    """
    Main entry point for the render service.

    Parses command line arguments, initializes logging, and starts the server.
    PORT and WORKERS environment variables take precedence over --port and --workers.
    """
    parser = argparse.ArgumentParser(description="Render service")
    parser.add_argument("--port", default=DEFAULT_PORT, type=int, required=False, help="Service port")
    parser.add_argument("--workers", default=DEFAULT_WORKERS, type=int, required=False, help="Number of worker processes")
    args = parser.parse_args()

    setup_logging()

    port = _int_from_env("PORT", args.port)
    workers = max(1, _int_from_env("WORKERS", args.workers))
    logging.info("Render service listening port: %d (workers: %d)", port, workers)

    if workers > 1:
        start_server_multi_worker(port, workers)
    else:
        start_server_single_worker(port)


if __name__ == "__main__":
    main()
