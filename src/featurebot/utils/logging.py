"""
Logging setup for featurebot.

Every module gets its logger through ``setup_logging(__name__)``. Features log
under ``featurebot.features.<name>`` so their output can be filtered per
feature. ``configure_logging`` applies the level, JSON mode and log file from
``FeatureBotSettings`` to the whole ``featurebot`` logger tree.
"""

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from pythonjsonlogger.json import JsonFormatter

if TYPE_CHECKING:
    from featurebot.utils.config import FeatureBotSettings

PACKAGE_LOGGER = "featurebot"
FEATURE_LOGGER_PREFIX = f"{PACKAGE_LOGGER}.features"

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
JSON_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _make_formatter(structured: bool) -> logging.Formatter:
    if structured:
        return JsonFormatter(fmt=JSON_FORMAT, datefmt=DATE_FORMAT)
    return logging.Formatter(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)


def _make_handlers(structured: bool, log_file: Path | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    formatter = _make_formatter(structured)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(
    name: str | None = None,
    level: str | None = None,
    structured: bool = False,
    log_file: Path | None = None
) -> logging.Logger:
    """Setup logging for a module.

    Args:
        name: Logger name (defaults to the package logger)
        level: Logging level (INFO, DEBUG, etc.)
        structured: Enable JSON structured logging
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name or PACKAGE_LOGGER)

    # Re-imported modules (feature reload) must not stack handlers
    if logger.handlers:
        return logger

    # Once configure_logging has run, package loggers propagate to its handlers
    if logger.name.startswith(f"{PACKAGE_LOGGER}.") and logging.getLogger(PACKAGE_LOGGER).handlers:
        return logger

    logger.setLevel(getattr(logging, (level or "INFO").upper()))
    for handler in _make_handlers(structured, log_file):
        logger.addHandler(handler)

    return logger


def configure_logging(settings: "FeatureBotSettings") -> logging.Logger:
    """Apply logging settings to the ``featurebot`` logger tree.

    The package logger gets the console and file handlers. Module loggers
    created by ``setup_logging`` lose their own handlers and propagate to it,
    so every core and feature record reaches the log file.

    Returns:
        The package logger
    """
    level = getattr(logging, settings.log_level.upper())
    log_file = settings.get_log_file_path()

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    for handler in _make_handlers(settings.log_structured, log_file):
        package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False

    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if not isinstance(logger, logging.Logger) or not name.startswith(f"{PACKAGE_LOGGER}."):
            continue
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(logging.NOTSET)
        logger.propagate = True

    return package_logger


def get_feature_logger(feature_name: str) -> logging.Logger:
    """Logger handed to a feature through its context."""
    return logging.getLogger(f"{FEATURE_LOGGER_PREFIX}.{feature_name}")
