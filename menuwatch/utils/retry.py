"""Retry helpers without external dependencies."""

from __future__ import annotations

import functools
import logging
import os
import random
import time
from collections.abc import Callable

from menuwatch.errors import ConflictError

logger = logging.getLogger(__name__)

CONFLICT_RETRY_ATTEMPTS = int(os.environ.get("CONFLICT_RETRY_ATTEMPTS", 3))
RETRY_EXCEPTIONS = (ConflictError,)


def retry_on_conflict(func: Callable | None = None, *, attempts: int | None = None, base_delay: float = 0.05):
    """Re-run a read-modify-write when a unique key collision is reported.

    The wrapped function must open its own transaction so each attempt
    starts from a fresh read.
    """

    def decorator(inner: Callable):
        @functools.wraps(inner)
        def wrapper(*args, **kwargs):
            max_attempts = attempts or CONFLICT_RETRY_ATTEMPTS
            delay = base_delay
            for attempt in range(max_attempts):
                try:
                    return inner(*args, **kwargs)
                except RETRY_EXCEPTIONS as exc:
                    if attempt == max_attempts - 1:
                        raise
                    logger.info("Conflict in %s (attempt %s): %s", inner.__name__, attempt + 1, exc)
                    time.sleep(delay * random.random())
                    delay *= 2
        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
