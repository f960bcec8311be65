"""
Utility functions for the application
"""
import asyncio
import logging
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable

import httpx

from degrees.errors import InvalidInput

logger = logging.getLogger(__name__)


def is_valid_identity(value: Any) -> bool:
    """True for positive integers (bools are rejected even though they are ints)"""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def require_identity(value: Any, name: str = "identity") -> int:
    """
    Validate an identity before any I/O is done with it

    Raises:
        InvalidInput: If the value is missing or not a positive integer
    """
    if not is_valid_identity(value):
        raise InvalidInput(f"Invalid {name}: {value!r}")
    return value


def normalize_handle(handle: str) -> str:
    """
    Normalize a user handle for lookups

    Args:
        handle: Handle as typed by a user, optionally prefixed with '@'

    Returns:
        Lowercase handle without surrounding whitespace or leading '@'
    """
    return handle.strip().lstrip('@').lower()


def utc_now() -> str:
    """ISO-8601 UTC timestamp with microseconds (sorts lexicographically)"""
    return datetime.now(timezone.utc).isoformat(timespec='microseconds')


def retry_on_failure(max_retries: int = 3, backoff_factor: float = 0.5):
    """
    Decorator to retry async functions on transient failures

    Args:
        max_retries: Maximum number of attempts (default: 3)
        backoff_factor: Multiplier for exponential backoff (default: 0.5)

    Retries on:
    - httpx.TimeoutException (network timeouts)
    - httpx.ConnectError (connection failures)
    - httpx.ReadError (read failures)

    Does NOT retry on:
    - httpx.HTTPStatusError (4xx, 5xx responses)
    - Other exceptions
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)

                except (httpx.TimeoutException, httpx.ConnectError, httpx.ReadError) as e:
                    if attempt < max_retries - 1:
                        # Exponential backoff: 0.5s, 1s, 2s
                        sleep_time = backoff_factor * (2 ** attempt)
                        logger.warning(
                            "API call failed, retrying",
                            extra={
                                "error_type": type(e).__name__,
                                "retry_delay": sleep_time,
                                "attempt": attempt + 1,
                                "max_retries": max_retries
                            }
                        )
                        await asyncio.sleep(sleep_time)
                        continue

                    logger.error(f"API call failed after {max_retries} attempts", extra={"error": str(e)})
                    raise

        return wrapper
    return decorator
