"""
Logging utilities for internal use.

Usage:
    from threadscope.internal.logger import get_logger
    log = get_logger(__name__)

    log.debug("sampler tick missed thread %d", thread_id)

Every logger returned by ``get_logger`` carries a rate limiting filter: a given call site (pathname + line number)
emits at most one record per ``THREADSCOPE_LOGGING_RATE`` seconds (60 by default). Skipped records are counted and
the count is reported on the next record that goes through, e.g.::

    WARNING threadscope.profiling.runtime: greenlet tracing unavailable [3 skipped]

Setting ``THREADSCOPE_LOGGING_RATE=0`` disables rate limiting, as does a logger whose effective level is DEBUG.
"""

import collections
import logging
import os
import time
from typing import DefaultDict
from typing import Tuple


SECOND = 1
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE


def get_logger(name: str) -> logging.Logger:
    """
    Retrieve or create a ``Logger`` instance with consistent behavior for internal use.

    Configure all loggers with a rate limiter filter to prevent excessive logging from hot paths such as the
    sampler tick or allocation hooks.

    """
    logger = logging.getLogger(name)
    # addFilter will only add the filter if it is not already present
    logger.addFilter(log_filter)
    logger.propagate = True
    return logger


class LoggingBucket:
    """Time bucket of one call site and the number of records skipped in it."""

    __slots__ = ("bucket", "skipped")

    def __init__(self, bucket: float, skipped: int):
        self.bucket = bucket
        self.skipped = skipped

    def __repr__(self):
        return f"LoggingBucket({self.bucket}, {self.skipped})"

    def is_sampled(self, record: logging.LogRecord, rate: float) -> bool:
        current = time.monotonic()
        if current - self.bucket >= rate:
            self.bucket = current
            record.skipped = self.skipped
            self.skipped = 0
            return True
        self.skipped += 1
        return False


_MINF = float("-inf")

_buckets: DefaultDict[Tuple[str, int], LoggingBucket] = collections.defaultdict(lambda: LoggingBucket(_MINF, 0))

# DEV: `THREADSCOPE_LOGGING_RATE=0` means to disable all rate limiting
_rate_limit = int(os.getenv("THREADSCOPE_LOGGING_RATE", default=60))


def log_filter(record: logging.LogRecord) -> bool:
    """Return whether a record should be emitted (True) or skipped (False)."""
    logger = logging.getLogger(record.name)
    if not _rate_limit or logger.getEffectiveLevel() == logging.DEBUG:
        return True
    return _buckets[(record.pathname, record.lineno)].is_sampled(record, _rate_limit)


class ThreadscopeFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        skipped = getattr(record, "skipped", 0)
        skip_str = f" [{skipped} skipped]" if skipped else ""
        return f"{record.levelname} {super().format(record)}{skip_str}"


# setup the default formatter for all threadscope loggers
root_logger = logging.getLogger("threadscope")
root_logger.addHandler(logging.StreamHandler())
root_logger.handlers[-1].setFormatter(ThreadscopeFormatter("%(name)s: %(message)s"))
root_logger.propagate = True
