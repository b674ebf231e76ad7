"""Logging setup for the polygon parts service.

Modules log through ``logging.getLogger(__name__)``; this module only
attaches a single stream handler to the package logger so that the
service output is consistent under uvicorn and in tests.
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
PACKAGE_LOGGER = "polygon_parts"

_formatter = logging.Formatter(LOG_FORMAT)


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Configure the package logger once and return it.

    Calling this more than once only updates the level; the handler is
    never duplicated.

    Args:
        level: Log level name or number.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    if not any(handler.formatter is _formatter for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(_formatter)
        logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    return logger
