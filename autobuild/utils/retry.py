"""Retry utilities for transient infrastructure failures.

The lock service client and the tracker adapter wrap their I/O in
``async_retry`` so a single dropped connection does not stall a worker or
flip the session into ``error``.

Backoff Formula:
    delay = min(base_delay * backoff_factor ** (attempt - 1), max_delay)
    For base_delay=0.5, backoff_factor=2.0: 0.5s, 1s, 2s, ...

Example:
    >>> @async_retry(max_attempts=3, exceptions=(httpx.TransportError,))
    ... async def post(path: str, body: dict) -> dict:
    ...     ...
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    base_delay: float = 0.5,
    max_delay: float = 10.0,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of calls before giving up.
        backoff_factor: Multiplier applied to the delay after each failure.
        exceptions: Exception types that trigger a retry. Anything else
            propagates immediately.
        base_delay: Seconds to wait after the first failure.
        max_delay: Ceiling for any single delay.

    Returns:
        A decorator that wraps async functions with retry logic.

    Raises:
        The last caught exception once every attempt is exhausted.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = min(base_delay * backoff_factor ** (attempt - 1), max_delay)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
