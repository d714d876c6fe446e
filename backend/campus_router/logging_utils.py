from __future__ import annotations

import logging
import time
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "campus_router"
LOG_FILE_NAME = "router.log.jsonl"
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _parse_level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


def _writable_log_dir(out_dir: str) -> Path | None:
    # First writable candidate wins; no file logging when none is.
    for log_dir in (
        Path(out_dir) / "logs",
        Path.cwd() / "out" / "logs",
        Path(gettempdir()) / "campus-router" / "logs",
    ):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            marker = log_dir / ".writetest"
            marker.touch(exist_ok=True)
            marker.unlink(missing_ok=True)
        except OSError:
            continue
        return log_dir
    return None


def _json_formatter() -> logging.Formatter:
    return jsonlogger.JsonFormatter(_FORMAT, rename_fields={"asctime": "ts", "levelname": "level"})


def configure_logging(*, level: str | None = None, out_dir: str | None = None) -> logging.Logger:
    """Attach JSON handlers (stderr plus a jsonl file when possible) to the package logger.

    Safe to call repeatedly: handlers are only added the first time.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_parse_level(level or settings.log_level))
    if getattr(logger, "_campus_router_configured", False):
        return logger
    logger.propagate = False

    formatter = _json_formatter()
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    log_dir = _writable_log_dir(out_dir or settings.out_dir)
    if log_dir is not None:
        try:
            file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
        except OSError:
            file_handler = None
        if file_handler is not None:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger._campus_router_configured = True  # type: ignore[attr-defined]
    return logger


_LOGGER: logging.Logger | None = None


def get_logger() -> logging.Logger:
    global _LOGGER
    if _LOGGER is None:
        _LOGGER = configure_logging()
    return _LOGGER


def elapsed_ms(t0: float) -> float:
    """Milliseconds since a ``time.perf_counter()`` reading, rounded for logs."""
    return round((time.perf_counter() - t0) * 1000.0, 2)


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    # The event name is both the message and a top-level key.
    get_logger().log(level, event, extra={"event": event, **fields})
