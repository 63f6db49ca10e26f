"""Utility helpers shared across cineai_rec."""

import asyncio
import logging
from functools import wraps
from typing import Callable, Iterator, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def async_retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Async decorator that retries a coroutine with exponential backoff on failure.

    Args:
        max_retries: Maximum number of attempts
        initial_delay: Delay in seconds before the first retry
        backoff_factor: Multiplier applied to the delay after each retry
        exceptions: Exception types that trigger a retry; anything else propagates immediately

    Example:
        @async_retry_with_backoff(max_retries=3, initial_delay=0.5, exceptions=(httpx.TimeoutException,))
        async def fetch():
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}): {e}. "
                            f"Retrying in {delay:.1f}s..."
                        )
                        await asyncio.sleep(delay)
                        delay *= backoff_factor
                    else:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} attempts: {e}"
                        )

            raise last_exception

        return wrapper
    return decorator


def batched(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]
