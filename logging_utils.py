"""Shared logging configuration helpers."""

from __future__ import annotations

import logging
import sys
from typing import Iterable

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

LOG_LEVEL_CHOICES: Iterable[str] = tuple(LOG_LEVELS.keys())

# Loggers owned by this project
PROJECT_LOGGERS = ("rcnn", "preprocessing")


def resolve_log_level(
    log_level: str | None = None,
    verbose: int = 0,
    quiet: int = 0,
) -> int:
    """Resolve a numeric log level from an explicit name or modifier counts.

    Raises:
        ValueError: If ``log_level`` is not a known level name.
    """
    if log_level:
        try:
            return LOG_LEVELS[log_level.lower()]
        except KeyError:
            raise ValueError(
                f"Unknown log level {log_level!r}, expected one of {', '.join(LOG_LEVEL_CHOICES)}"
            ) from None

    offset = verbose - quiet
    if offset >= 1:
        return logging.DEBUG
    if offset == 0:
        return logging.INFO
    if offset == -1:
        return logging.WARNING
    return logging.ERROR


def configure_logging(
    log_level: str | None = None,
    verbose: int = 0,
    quiet: int = 0,
    pipeline_level: str | None = None,
) -> int:
    """Configure root logging and return the active level.

    Args:
        log_level: Explicit level name for the root logger.
        verbose: Number of verbosity increments.
        quiet: Number of verbosity decrements.
        pipeline_level: Optional separate level for the project loggers,
            e.g. ``"debug"`` to see per-stage box counts while keeping
            third-party output at the root level.
    """
    level = resolve_log_level(log_level=log_level, verbose=verbose, quiet=quiet)
    root_logger = logging.getLogger()

    if root_logger.handlers:
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
            stream=sys.stdout,
        )

    if pipeline_level:
        project_level = resolve_log_level(pipeline_level)
        for name in PROJECT_LOGGERS:
            logging.getLogger(name).setLevel(project_level)
        if project_level < level:
            for handler in root_logger.handlers:
                handler.setLevel(project_level)
    return level
