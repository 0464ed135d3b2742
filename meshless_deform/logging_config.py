"""
Logging Configuration
Routes the package's warnings (clamped parameters, fallbacks, particle resets)
to a stream for hosts that do not configure logging themselves.
"""
import logging
import sys
from typing import Optional, TextIO


def setup_logging(level: int = logging.INFO, stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Attach a single stream handler to the 'meshless_deform' logger.

    Calling it again replaces the handler installed by the previous call.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.WARNING)
        stream: Target stream; stderr if None

    Returns:
        The package logger.
    """
    logger = logging.getLogger("meshless_deform")
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter('%(levelname)s %(name)s: %(message)s'))
    logger.addHandler(handler)
    return logger
