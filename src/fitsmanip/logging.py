"""
Logging utilities for fitsmanip.

All diagnostics go through the ``fitsmanip`` logger, which writes to
stderr so that command output on stdout stays clean. Only warnings and
errors are shown until set_log_level (or ``fitsmanip -v``) lowers the
threshold.
"""

import logging
import sys
import time
from functools import wraps
from typing import Optional, Union

logger = logging.getLogger("fitsmanip")
logger.setLevel(logging.WARNING)

if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    logger.addHandler(handler)


def log_errors(func):
    """
    Decorator logging any exception at ERROR level, tagged with the name
    of the failing function, then re-raising it unchanged.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}")
            raise

    return wrapper


def log_performance(func):
    """
    Decorator reporting wall-clock time of a call at DEBUG level.

    Pipeline stages and file codecs are wrapped with it, so ``-vv`` on the
    command line shows where the time goes. Failures are timed too.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            logger.debug(f"{func.__name__} failed after {elapsed:.2f}ms: {e}")
            raise
        elapsed = (time.perf_counter() - start) * 1000
        logger.debug(f"{func.__name__} completed in {elapsed:.2f}ms")
        return result

    return wrapper


def set_log_level(level: Union[str, int]):
    """
    Set the threshold of the fitsmanip logger.

    Args:
        level: A logging level number, or a level name in any case.
            Unknown names fall back to WARNING.
    """
    if isinstance(level, int):
        logger.setLevel(level)
        return
    names = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    logger.setLevel(names.get(level.upper(), logging.WARNING))


def log_hdu_error(operation: str, hdu_index: int, details: Optional[str] = None):
    """Log a codec failure with the 1-based number of the HDU it concerns."""
    msg = f"{operation} failed for HDU {hdu_index}"
    if details:
        msg += f": {details}"
    logger.error(msg)
