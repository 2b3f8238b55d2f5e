"""Retry utilities for handling transient failures.

Provides a decorator for retrying async operations with exponential
backoff. The generation provider client wraps each provider attempt with
it so transient failures (overload, throttling, timeouts) are retried and
everything else propagates immediately.

Key Exports:
    async_retry: Decorator for adding retry logic to async functions.
    backoff_delay: Delay before a given retry.

Example:
    >>> from testsmith.utils.retry import async_retry
    >>>
    >>> @async_retry(max_attempts=3, base_delay=1.0, backoff_factor=2.0)
    ... async def fetch_data(url: str) -> dict:
    ...     async with httpx.AsyncClient() as client:
    ...         response = await client.get(url)
    ...         return response.json()

Thread Safety:
    The retry decorator is stateless and safe for concurrent use.
    Each decorated function call maintains its own retry state.

Backoff Formula:
    delay = base_delay * backoff_factor ** (attempt_number - 1)
    For base_delay=1.0, backoff_factor=2.0: 1s, 2s, 4s, ...
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float = 1.0, backoff_factor: float = 2.0) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
    return base_delay * backoff_factor ** (attempt - 1)


def async_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts before giving up. The
            function will be called at most max_attempts times.
        base_delay: Delay in seconds after the first failed attempt.
        backoff_factor: Multiplier applied to the delay after each
            further failure.
        exceptions: Tuple of exception types to catch and retry. Only
            exceptions in this tuple (or subclasses) will trigger a retry.
            Other exceptions propagate immediately.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Raises:
        The last caught exception if all retry attempts are exhausted.
        Exceptions not in the exceptions tuple are raised immediately.

    Example:
        >>> @async_retry(
        ...     max_attempts=5,
        ...     base_delay=0.5,
        ...     exceptions=(ConnectionError, TimeoutError),
        ... )
        ... async def fetch_with_timeout():
        ...     return await unreliable_api_call()

    Note:
        The decorator logs each retry attempt at WARNING level and logs
        exhausted retries at ERROR level using structlog.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_delay(attempt, base_delay, backoff_factor)
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
