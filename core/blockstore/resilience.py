"""
Retry helpers for transient storage failures.

Only TransientError is retried: validation, lookup and conflict errors are
permanent and surface immediately. Retry policy stays with the caller; the
client itself never retries.
"""

from __future__ import annotations

import time
from functools import wraps
from typing import Callable, Optional, TypeVar

from .errors import TransientError
from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def retry_transient(
    max_retries: int = 3,
    delay: float = 0.5,
    multiplier: float = 2.0,
    max_delay: float = 10.0,
    on_retry: Optional[Callable[[TransientError, int], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator retrying a function on TransientError with exponential backoff.

    Usage:
        @retry_transient(max_retries=3, delay=0.5)
        def load_credentials():
            return client.load("database-credentials", "warehouse")
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            last_exception: Optional[TransientError] = None
            current_delay = delay
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except TransientError as e:
                    last_exception = e
                    if attempt >= max_retries:
                        raise
                    if on_retry:
                        on_retry(e, attempt + 1)
                    logger.warning(
                        "transient_error_retry",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        error=e.message,
                    )
                    sleep(current_delay)
                    current_delay = min(current_delay * multiplier, max_delay)
            if last_exception is not None:
                raise last_exception
            return func(*args, **kwargs)

        return wrapper

    return decorator
