"""
Logging setup for the command line entry point.

Library modules only create `logging.getLogger(__name__)` loggers; handlers
are attached here, once, by the application.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    """Attach a single stderr handler to the package logger.

    A handler left by an earlier call is replaced, not flushed, since the
    stream it wrote to may already be closed.
    """
    logger = logging.getLogger("meter_ledger")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if getattr(handler, "_meter_ledger", False):
            logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._meter_ledger = True
    logger.addHandler(handler)
