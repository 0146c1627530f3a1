from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

_HANDLER_NAME = "clipmem-stderr"


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Send clipmem logs to stderr, which is the log file when daemonized."""

    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    else:
        resolved = level

    logger = logging.getLogger("clipmem")
    logger.setLevel(resolved)
    if not any(handler.get_name() == _HANDLER_NAME for handler in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
    logger.propagate = False

    # Pillow logs every plugin import at debug level.
    logging.getLogger("PIL").setLevel(logging.WARNING)
    return logger
