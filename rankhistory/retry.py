"""
Retry with exponential backoff for transport-level failures.

Only network hiccups (timeouts, dropped connections) are retried here.
A quote request that reaches the API and fails is never retried within a
run; the token is recorded as failed and picked up again only by a
manual resume.
"""

import functools
import time
from typing import Callable, Optional, Tuple, Type


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""


def exponential_backoff(
    max_retries: int = 2,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
):
    """
    Retry the wrapped call when it raises one of ``exceptions``.

    Retry ``n`` (1-based) waits ``base_delay * exponential_base ** (n - 1)``
    seconds, capped at ``max_delay``. ``on_retry(n, error, delay)`` is
    called before each wait. Once ``max_retries`` retries have failed the
    last error is raised as the cause of a :class:`RetryError`. Other
    exceptions pass straight through.
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            retries = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if retries >= max_retries:
                        raise RetryError(f"Failed after {retries + 1} attempts: {e}") from e
                    delay = min(base_delay * exponential_base ** retries, max_delay)
                    retries += 1
                    if on_retry:
                        on_retry(retries, e, delay)
                    time.sleep(delay)

        return wrapper
    return decorator
