from __future__ import annotations

import logging
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "railmap"
LOG_FILE_NAME = "railmap.log.jsonl"

_logger: logging.Logger | None = None


def _writable_log_dir() -> Path | None:
    for log_dir in (Path(settings.out_dir) / "logs", Path(gettempdir()) / LOGGER_NAME / "logs"):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            continue
        if log_dir.is_dir():
            return log_dir
    return None


def _attach_handlers(logger: logging.Logger) -> None:
    formatter = jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(message)s")

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    # file output is best effort; read-only deployments log to stderr only
    log_dir = _writable_log_dir()
    if log_dir is None:
        return
    try:
        file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
    except OSError:
        return
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)


def get_logger() -> logging.Logger:
    """Return the shared ``railmap`` JSON logger, configuring it once per process."""
    global _logger
    if _logger is not None:
        return _logger
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        level = logging.getLevelName(settings.log_level)
        logger.setLevel(level if isinstance(level, int) else logging.INFO)
        logger.propagate = False
        _attach_handlers(logger)
    _logger = logger
    return logger


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    get_logger().log(level, event, extra={"event": event, **fields})
