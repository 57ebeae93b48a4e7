"""
retry.py — Bounded retry with exponential back-off.

The listing and extraction clients never retry on their own; callers wrap
the blocking call here so the policy lives in one place.
"""

import logging
import time
from typing import Callable, TypeVar

from constants import RETRY_ATTEMPTS, RETRY_BACKOFF

log = logging.getLogger("strmsync.retry")

T = TypeVar("T")


def call_with_backoff(fn: Callable[[], T],
                      retry_on: tuple[type[BaseException], ...],
                      label: str,
                      max_retries: int = RETRY_ATTEMPTS,
                      backoff: float = RETRY_BACKOFF,
                      sleep: Callable[[float], None] = time.sleep) -> T:
    """Call ``fn`` and retry on the given exception types.

    Waits ``backoff * 2**attempt`` seconds between attempts. The last
    exception is re-raised once ``max_retries`` retries are exhausted;
    exceptions outside ``retry_on`` propagate immediately.
    """
    for attempt in range(max_retries + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt >= max_retries:
                log.warning(f"  {label}: giving up after {max_retries} retries: {e}")
                raise
            wait = backoff * (2 ** attempt)
            log.warning(f"  {label}: {e}, retrying in {wait:.0f}s "
                        f"(attempt {attempt + 1}/{max_retries})")
            sleep(wait)
    raise ValueError(f"{label}: max_retries must be >= 0, got {max_retries}")
