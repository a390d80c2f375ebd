"""Logging setup for the sync service."""

import logging

PACKAGE_LOGGER = "fasterfoods_sync"
LOG_FORMAT = "%(asctime)s %(levelname)s: %(name)s: %(message)s"
_QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str | int = logging.INFO) -> logging.Logger:
    """Attach a single stream handler to the package logger and apply level.

    Per-request lines from the HTTP stack are limited to warnings, since a
    replay pass issues one request per queued operation.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
    return logger
