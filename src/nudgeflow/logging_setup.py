"""Logging setup for nudgeflow.

Everything logs under the ``nudgeflow`` namespace. The scheduler writes one
summary record per tick to ``nudgeflow.ticks``; in daemon mode with
``[logging] tick_log`` set, those records go to their own rotating file
instead of the main log, so the tick history stays readable.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Config, LoggingConfig

ROOT_LOGGER = "nudgeflow"
TICK_LOGGER = "nudgeflow.ticks"

_TIMESTAMPED = "%(asctime)s %(levelname)-5s [%(name)-20s] %(message)s"
_PLAIN = "%(levelname)-5s [%(name)-20s] %(message)s"
_TICK_FORMAT = "%(asctime)s %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS = ("httpx", "httpcore")

_initialized = False


def _rotating_handler(path: Path, log_config: LoggingConfig) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    if log_config.rotate:
        return RotatingFileHandler(
            path,
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.backup_count,
        )
    return logging.FileHandler(path)


def _attach_tick_log(log_config: LoggingConfig) -> None:
    """Route tick summaries, quiet ticks included, to their own file."""
    handler = _rotating_handler(Path(log_config.tick_log), log_config)
    handler.setFormatter(logging.Formatter(_TICK_FORMAT, datefmt=_DATE_FORMAT))

    tick_logger = logging.getLogger(TICK_LOGGER)
    tick_logger.handlers.clear()
    tick_logger.addHandler(handler)
    tick_logger.setLevel(logging.DEBUG)
    tick_logger.propagate = False


def setup_logging(
    config: Config,
    verbose: bool = False,
    daemon_mode: bool = False,
) -> None:
    """
    Configure logging for nudgeflow. Only the first call has any effect.

    Args:
        config: Application configuration with logging settings
        verbose: If True, override config level to DEBUG
        daemon_mode: If True, timestamp console output and honour ``tick_log``
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_config = config.logging
    level_name = "DEBUG" if verbose else log_config.level.upper()
    level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    handlers: list[logging.Handler] = []
    if log_config.output in ("console", "both"):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(logging.Formatter(
            _TIMESTAMPED if daemon_mode else _PLAIN,
            datefmt=_DATE_FORMAT if daemon_mode else None,
        ))
        handlers.append(console)

    if log_config.output in ("file", "both") and log_config.file:
        file_handler = _rotating_handler(Path(log_config.file), log_config)
        file_handler.setFormatter(logging.Formatter(_TIMESTAMPED, datefmt=_DATE_FORMAT))
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(level)
        logger.addHandler(handler)

    if daemon_mode and log_config.tick_log:
        _attach_tick_log(log_config)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def reset_logging() -> None:
    """Reset logging state for testing purposes."""
    global _initialized
    _initialized = False
    for name in (ROOT_LOGGER, TICK_LOGGER):
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
    tick_logger = logging.getLogger(TICK_LOGGER)
    tick_logger.setLevel(logging.NOTSET)
    tick_logger.propagate = True
