"""Process-wide logging setup.

Modules import ``logging`` from here so that the handler is installed before
the first logger is used::

    from mytxt.logger import logging

    logger = logging.getLogger(__name__)
"""

import logging
import os
import sys

LOG_LEVEL_ENV_VAR = "MYTXT_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DEFAULT_LEVEL = "WARNING"

_handler: logging.Handler | None = None


def configure(level: str | None = None):
    """Install the stderr handler on the package logger and set its level.

    Calling this again only changes the level.
    """
    global _handler

    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV_VAR, DEFAULT_LEVEL)

    package_logger = logging.getLogger("mytxt")
    if _handler is None:
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(_handler)

    package_logger.setLevel(level.upper())


configure()

__all__ = ["logging", "configure"]
