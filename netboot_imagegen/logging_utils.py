"""Logging setup for the command-line entry points.

Library modules only create module loggers; handlers are installed once
by the CLI so diagnostics go to standard error with a timestamp and level.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_HANDLER_NAME = "netboot-stderr"


def configure_logging(level: str | int = logging.INFO) -> logging.Handler:
    """Install the stderr handler on the root logger.

    Calling this more than once only updates the level and rebinds the
    handler to the current standard error.

    Args:
        level: Logging level name or number.

    Returns:
        The installed handler.
    """
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            handler.setLevel(level)
            if isinstance(handler, logging.StreamHandler):
                handler.setStream(sys.stderr)
            return handler

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return handler


__all__ = ["LOG_DATE_FORMAT", "LOG_FORMAT", "configure_logging"]
