"""Retry utilities with exponential backoff."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def exponential_backoff(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    operation: str = "operation",
) -> T:
    """
    Await ``func`` until it succeeds or ``max_attempts`` is reached.

    Args:
        func: Coroutine function to execute
        max_attempts: Maximum number of attempts
        initial_delay: Delay after the first failure (seconds)
        max_delay: Upper bound for any single delay (seconds)
        backoff_factor: Multiplier for delay after each failure
        jitter: Whether to add +/-25% random jitter to delays
        exceptions: Exceptions that trigger another attempt
        operation: Name used in log messages

    Raises:
        The last exception encountered if all attempts fail
    """
    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except exceptions as e:
            if attempt == max_attempts:
                logger.error(f"{operation} failed after {max_attempts} attempts: {e}")
                raise

            actual_delay = delay
            if jitter:
                actual_delay += random.uniform(-delay * 0.25, delay * 0.25)
            actual_delay = min(max(actual_delay, 0.0), max_delay)

            logger.warning(
                f"{operation} attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {actual_delay:.2f} seconds..."
            )

            await asyncio.sleep(actual_delay)
            delay *= backoff_factor

    raise RuntimeError(f"{operation} was not attempted (max_attempts={max_attempts})")
