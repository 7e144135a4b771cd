"""Logging configuration for adbpair.

All modules log through ``logging.getLogger(__name__)``, which places them
under the ``adbpair`` package logger configured here. Console output goes
to stderr so commands like ``adbpair pubkey`` keep stdout clean.
"""

import logging
import sys
from pathlib import Path

from adbpair.config import Config

PACKAGE_LOGGER = "adbpair"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured: logging.Logger | None = None


def _level_for(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _build_handlers(config: Config) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    handlers.append(logging.StreamHandler(sys.stderr))
    return handlers


def setup_logging(config: Config) -> logging.Logger:
    """Configure the adbpair package logger.

    Only the first call has an effect until reset_logging() is called.

    Args:
        config: Supplies log_level and the optional log_file.

    Returns:
        The package logger.
    """
    global _configured

    if _configured is not None:
        return _configured

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(_level_for(config.log_level))
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in _build_handlers(config):
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    # Handlers live on the package logger only
    logger.propagate = False

    _configured = logger
    return logger


def reset_logging() -> None:
    """Undo setup_logging(). Used for testing."""
    global _configured
    if _configured is None:
        return

    for handler in list(_configured.handlers):
        handler.close()
        _configured.removeHandler(handler)
    _configured.setLevel(logging.NOTSET)
    _configured.propagate = True
    _configured = None
