"""Retry logic with exponential backoff for transient failures."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from botgateway.domain.errors import SendError
from botgateway.observability.logging import get_logger

T = TypeVar("T")
log = get_logger("retry")


def is_transient(exc: BaseException) -> bool:
    """Retryable SendErrors and timeouts are transient; everything else is final."""
    if isinstance(exc, SendError):
        return exc.retryable
    return isinstance(exc, asyncio.TimeoutError)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 10.0,
    retry_on: Callable[[BaseException], bool] = is_transient,
    **kwargs: Any,
) -> T:
    """
    Retry an async function with exponential backoff.

    Args:
        func: Async function to retry
        *args: Positional arguments for func
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        retry_on: Predicate deciding whether an exception is worth another attempt
        **kwargs: Keyword arguments for func

    Returns:
        Function result

    Raises:
        The last exception once attempts are exhausted or it is not retryable.
    """
    retry_config = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(min=min_wait, max=max_wait),
        retry=retry_if_exception(retry_on),
        reraise=True,
    )

    attempt = 0
    async for attempt_state in retry_config:
        with attempt_state:
            attempt += 1
            try:
                result = await func(*args, **kwargs)
                if attempt > 1:
                    log.info(
                        "retry_succeeded",
                        func=getattr(func, "__name__", repr(func)),
                        attempts=attempt,
                    )
                return result
            except Exception as e:
                log.warning(
                    "retry_failed_attempt",
                    func=getattr(func, "__name__", repr(func)),
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
