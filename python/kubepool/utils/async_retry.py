"""
kubepool/utils/async_retry.py

Decorator that retries an async function a bounded number of times, used for
transient failures such as an SSH daemon that is not accepting connections yet.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Retry the decorated coroutine function on failure.

    Args:
        retries: Maximum number of total attempts (not just failures).
        delay: Seconds to sleep between attempts.
        noisy: Log a warning per failed attempt and an error once all fail.
        retry_on: Exception types that trigger another attempt. Anything else
            propagates immediately.

    Returns:
        A decorator producing a wrapper with the same signature.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d of %s failed: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    if attempt_number < retries:
                        await asyncio.sleep(delay)
                        return await attempt(attempt_number + 1)

                    if noisy:
                        logger.error(
                            "All %d attempts of %s failed", retries, func.__qualname__
                        )
                    raise

            return await attempt(1)

        return wrapper

    return decorator
