from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Mapping

from media_index.config.models import LoggingSettings

LOG_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_level(name: str) -> int:
    level = logging.getLevelNamesMapping().get(name.upper())
    if level is None:
        raise ValueError(f"Invalid logging level: {name}")
    return level


def _apply_logger_levels(levels: Mapping[str, str]) -> None:
    for logger_name, level_name in levels.items():
        logging.getLogger(logger_name).setLevel(_resolve_level(level_name))


def _file_handler(settings: LoggingSettings, formatter: logging.Formatter) -> logging.Handler:
    path = Path(settings.file.path.strip())
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        filename=str(path),
        when="midnight",
        interval=1,
        backupCount=settings.file.rotation.backup_count,
        encoding="utf-8",
    )
    handler.suffix = "%Y-%m-%d"
    handler.setFormatter(formatter)
    return handler


def init_logging(settings: LoggingSettings) -> None:
    """
    Configure the root logger for a scanner process.

    Console output is always on. When `file.path` is set a daily-rotated file
    receives the same records. Handlers do not filter by level, so
    `logger_levels` can tune individual loggers in both directions,
    for example raising `aiohttp` above DEBUG or lowering `media_index.state`
    to trace lease heartbeats.
    """
    level = _resolve_level(settings.level)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root_logger.addHandler(console)

    if settings.file.path.strip():
        try:
            root_logger.addHandler(_file_handler(settings, formatter))
        except OSError:
            root_logger.error("File logging handler failed to initialize path=%s", settings.file.path, exc_info=True)

    _apply_logger_levels(settings.logger_levels)


__all__ = ["init_logging"]
