"""
Retry Backoff
=============
Exponential backoff retry for transient storage failures.
"""

import asyncio
import random
from typing import TypeVar, Callable, Awaitable, Iterable, Optional, Type
import structlog

from .exceptions import RetryExhausted

logger = structlog.get_logger(__name__)

T = TypeVar('T')


def compute_backoff_delay(
    attempt: int,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """
    Delay before the next attempt after ``attempt`` failures (1-based).

    With jitter the delay is scaled by a random factor in [0.5, 1.5).
    """
    delay = min(base_delay * (exponential_base ** (attempt - 1)), max_delay)
    if jitter:
        delay = delay * (0.5 + random.random())
    return delay


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 3,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: Optional[Iterable[Type[BaseException]]] = None,
    **kwargs,
) -> T:
    """
    Execute a coroutine function with exponential backoff retry.

    Only exceptions listed in ``retryable_exceptions`` are retried; anything
    else propagates on the first occurrence.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        max_attempts: Maximum number of attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential calculation
        jitter: Add random jitter to delays
        retryable_exceptions: Exception types to retry on
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        RetryExhausted: If all attempts fail
    """
    retryable = tuple(retryable_exceptions or (Exception,))
    last_exception: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except retryable as e:
            last_exception = e

            if attempt == max_attempts:
                logger.error(
                    "Retry exhausted",
                    func=getattr(func, "__name__", repr(func)),
                    attempts=attempt,
                    error=str(e),
                )
                raise RetryExhausted(
                    f"Failed after {max_attempts} attempts: {e}",
                    last_exception=e,
                ) from e

            delay = compute_backoff_delay(
                attempt, base_delay, max_delay, exponential_base, jitter
            )
            logger.warning(
                "Retrying after failure",
                func=getattr(func, "__name__", repr(func)),
                attempt=attempt,
                delay=round(delay, 3),
                error=str(e),
            )
            await asyncio.sleep(delay)

    raise RetryExhausted(f"Failed after {max_attempts} attempts", last_exception)

