"""Retry utilities for transient tracker failures.

The tracker client owns transient-network retry; the rule engine itself
never retries an action. This module provides the decorator the client
uses for that.

Key Exports:
    async_retry: Decorator adding exponential-backoff retry to coroutines.
    is_transient: Default predicate deciding whether an error is retryable.

Backoff Formula:
    delay = backoff_factor ** attempt_number
    For backoff_factor=2.0: 2s, 4s, 8s, ...
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from trackflow.exceptions import ExternalServiceError

log = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


def is_transient(error: BaseException) -> bool:
    """Decide whether an error is worth retrying.

    Connection problems and timeouts are always transient. Error responses
    are transient only for throttling and gateway status codes.

    Args:
        error: The exception raised by the wrapped call

    Returns:
        True if the call should be attempted again
    """
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, ExternalServiceError):
        # No status code means the request never got an answer
        return error.status_code is None or error.status_code in RETRYABLE_STATUS_CODES
    return False


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    retryable: Callable[[BaseException], bool] = is_transient,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts before giving up.
        backoff_factor: Base for the exponential backoff calculation.
        retryable: Predicate deciding whether a raised exception should be
            retried. Non-retryable exceptions propagate immediately.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Raises:
        The last caught exception if all retry attempts are exhausted.

    Example:
        >>> @async_retry(max_attempts=5, backoff_factor=1.5)
        ... async def fetch_issue(key: str) -> dict:
        ...     return await client.get(f"/rest/api/3/issue/{key}")
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not retryable(e):
                        raise
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_factor**attempt
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
