"""
Shared helpers for ctxsync: retries, rate limiting and content hashing.
"""

import functools
import hashlib
import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def retry_on_failure(
    max_attempts: int = 3,
    delay: float = 0.5,
    backoff: float = 2.0,
    max_delay: float = 30.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
    on_exhausted: Optional[Callable[[BaseException], BaseException]] = None,
):
    """
    Retry the decorated callable with bounded exponential backoff.

    The wait before attempt n+1 is delay * backoff**(n-1), capped at
    max_delay. max_attempts, delay and max_delay may be overridden per call
    by attributes of the same name on the bound instance (retry_attempts,
    retry_delay, max_retry_delay), so configured objects share one decorator.

    Args:
        max_attempts: Total number of attempts (>= 1)
        delay: Initial delay in seconds
        backoff: Multiplier applied to the delay after each failure
        max_delay: Upper bound for a single delay
        exceptions: Exception types that trigger a retry
        on_exhausted: Optional mapper from the last exception to the one raised
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            owner = args[0] if args else None
            attempts = max(1, getattr(owner, "retry_attempts", max_attempts))
            wait = getattr(owner, "retry_delay", delay)
            ceiling = getattr(owner, "max_retry_delay", max_delay)

            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == attempts:
                        logger.warning(f"{func.__name__} failed after {attempts} attempts: {e}")
                        if on_exhausted is not None:
                            raise on_exhausted(e) from e
                        raise
                    logger.debug(
                        f"{func.__name__} attempt {attempt}/{attempts} failed ({e}), "
                        f"retrying in {wait:.2f}s"
                    )
                    if wait > 0:
                        time.sleep(wait)
                    wait = min(ceiling, wait * backoff)
        return wrapper
    return decorator


class RateLimiter:
    """
    Minimum-interval rate limiter shared by concurrent callers.

    A rate of 0 or less disables limiting.
    """

    def __init__(self, requests_per_second: float = 0.0):
        self.interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self) -> None:
        if self.interval <= 0:
            return
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.interval
        if slot > now:
            time.sleep(slot - now)


def normalize_text(text: str) -> str:
    """
    Normalize text before hashing.

    Line endings become LF, trailing whitespace is dropped from every line,
    and leading/trailing blank lines are removed.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.rstrip() for line in text.split("\n")]
    return "\n".join(lines).strip("\n")


def content_hash(text: str) -> str:
    """SHA256 hex digest of the normalized text."""
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def file_hash(content: str) -> str:
    """SHA256 hex digest of raw file content, used for dirty-file detection."""
    return hashlib.sha256(content.encode("utf-8", errors="surrogatepass")).hexdigest()


def sql_string(value: str) -> str:
    """Quote a value as a SQL string literal for LanceDB filters."""
    return "'" + str(value).replace("'", "''") + "'"
