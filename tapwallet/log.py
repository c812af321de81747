"""
Logging for the ``tapwallet`` package.

Modules log through children of the ``tapwallet`` logger, which carries a
``NullHandler`` so that importing the library never prints anything.
Applications opt in with :func:`setup_logging`.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

ROOT_LOGGER = "tapwallet"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

log = logging.getLogger(ROOT_LOGGER)
log.addHandler(logging.NullHandler())


def get_logger(name: str) -> logging.Logger:
    """Return the ``tapwallet.<name>`` child logger."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(log_file: str = "tapwallet.log", level: int = logging.INFO) -> None:
    """
    Attach a rotating file handler (10 MiB x 5) and a WARNING-level
    console handler to the ``tapwallet`` logger.

    Repeated calls are no-ops.
    """
    if getattr(setup_logging, "_done", False):
        return

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [
        (RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5), level),
        (logging.StreamHandler(), logging.WARNING),
    ]
    for handler, handler_level in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(handler_level)
        log.addHandler(handler)
    log.setLevel(level)

    setup_logging._done = True  # type: ignore[attr-defined]
