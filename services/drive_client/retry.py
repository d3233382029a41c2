"""Retry logic with exponential backoff for Drive API reads."""

import asyncio
import logging
from functools import wraps
from typing import Callable, Any, Type, Tuple

from services.drive_client.errors import TransientStorageError

logger = logging.getLogger(__name__)


def retry_with_exponential_backoff(
    max_retries: int = 2,
    initial_delay: float = 0.5,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (TransientStorageError,)
):
    """
    Decorator to retry a coroutine with exponential backoff.

    When the raised exception carries a ``retry_after`` hint (HTTP 429
    Retry-After), the wait is at least that long.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds before first retry
        exponential_base: Base for exponential backoff calculation
        exceptions: Tuple of exception types to catch and retry

    Returns:
        Decorated coroutine function with retry logic
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except exceptions as e:
                    last_exception = e

                    if attempt < max_retries:
                        delay = initial_delay * (exponential_base ** attempt)
                        retry_after = getattr(e, "retry_after", None)
                        if retry_after:
                            delay = max(delay, retry_after)

                        logger.warning(
                            f"Attempt {attempt + 1}/{max_retries + 1} failed for {func.__name__}: {e}. "
                            f"Retrying in {delay:.2f} seconds..."
                        )

                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            f"All {max_retries + 1} attempts failed for {func.__name__}: {e}"
                        )

            raise last_exception

        return wrapper

    return decorator
