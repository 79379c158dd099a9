"""
kubedeployer/utils/async_retry.py

Provides a decorator to retry an async function a bounded number of times,
with either a fixed or a linearly increasing delay between attempts.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def backoff_delay(delay: float, attempt_number: int, linear: bool) -> float:
    """Seconds to wait after the 1-based `attempt_number` has failed."""
    return delay * attempt_number if linear else delay


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    *,
    linear_backoff: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    noisy: bool = False,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon selected failures.

    The decorated function is attempted up to `retries` times in total. Only
    exceptions that are instances of `retry_on` trigger another attempt; any
    other exception propagates immediately. After failed attempt `n` the
    wrapper sleeps `delay` seconds, or `delay * n` with `linear_backoff`.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Base delay in seconds between attempts. Defaults to 1.0.
        linear_backoff (bool, optional):
            If True, the delay grows with the attempt index. Defaults to False.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that are worth retrying. Defaults to (Exception,).
        noisy (bool, optional):
            If True, logs a warning on each retried failure and an error when
            all attempts are exhausted. Defaults to False.

    Returns:
        A decorator that wraps an async function with the retry loop.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if remaining > 1:
                        wait = backoff_delay(delay, attempt_number, linear_backoff)
                        if noisy:
                            logger.warning(
                                "Attempt %d/%d of %r failed: %s. Retrying in %.1fs.",
                                attempt_number,
                                retries,
                                func.__qualname__,
                                exc,
                                wait,
                            )
                        await asyncio.sleep(wait)
                        return await attempt(remaining - 1, attempt_number + 1)

                    if noisy:
                        logger.error(
                            "All %d attempts of %r failed; last error: %s",
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    raise

            return await attempt(max(retries, 1), 1)

        return wrapper

    return decorator
