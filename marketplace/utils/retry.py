"""Retry logic with exponential backoff for upstream connection failures."""
import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from marketplace.providers.base import ProviderConnectionError
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    max_attempts: int = 1,
    initial_delay: float = 0.5,
    max_delay: float = 5.0,
    exponential_base: float = 2.0,
    **kwargs: Any
) -> T:
    """
    Retry a function with exponential backoff.

    Only ProviderConnectionError is retried: the request never reached the
    provider, so nothing was consumed upstream and nothing has been billed.
    Timeouts and error responses are returned to the caller on first sight.

    Args:
        func: Async function to retry
        max_attempts: Total attempts, 1 disables retrying
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Base for exponential backoff
        **kwargs: Arguments to pass to func

    Returns:
        Result of func

    Raises:
        Last exception if all attempts fail
    """
    delay = initial_delay
    attempts = max(1, max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await func(**kwargs)
        except ProviderConnectionError as e:
            if attempt >= attempts:
                raise
            logger.warning(
                f"Provider connection failed, retrying in {delay:.1f}s",
                extra={"error": str(e)},
            )
            await asyncio.sleep(delay)
            delay = min(delay * exponential_base, max_delay)

    raise AssertionError("unreachable")
