"""
Async utility helpers for the UniModel serving core.

Provides:
- retry_with_backoff: Retry a coroutine factory with exponential backoff
- async_retry: Decorator form of retry_with_backoff
- run_with_timeout: Bounded await with an optional default
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    delay: float,
    backoff: float = 2.0,
    max_delay: Optional[float] = None,
) -> float:
    """Wait time before retry number `attempt` (0-based)."""
    wait_time = delay * (backoff ** attempt)
    if max_delay is not None:
        wait_time = min(wait_time, max_delay)
    return wait_time


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    attempts: int = 3,
    delay: float = 0.05,
    backoff: float = 2.0,
    max_delay: Optional[float] = None,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    name: Optional[str] = None,
) -> T:
    """
    Call `func()` until it succeeds or `attempts` calls have failed.

    Only exceptions in `exceptions` are retried; anything else propagates
    immediately. The last retried exception is re-raised when attempts are
    exhausted.

    Example:
        result = await retry_with_backoff(
            lambda: backend.predict(inputs),
            attempts=4,
            delay=0.05,
            exceptions=(PluginCallFailed,),
        )
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    label = name or getattr(func, "__name__", "operation")
    last_exception: Optional[BaseException] = None

    for attempt in range(attempts):
        try:
            return await func()
        except exceptions as e:
            last_exception = e
            if attempt < attempts - 1:
                wait_time = backoff_delay(attempt, delay, backoff, max_delay)
                logger.warning(
                    f"Retry {attempt + 1}/{attempts - 1} for {label} "
                    f"after {wait_time:.3f}s: {e}"
                )
                if on_retry is not None:
                    on_retry(attempt + 1, e)
                await asyncio.sleep(wait_time)

    raise last_exception


def async_retry(
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
) -> Callable:
    """
    Decorator for async retry with exponential backoff.

    Example:
        @async_retry(attempts=3, delay=0.5)
        async def health_check():
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await retry_with_backoff(
                lambda: func(*args, **kwargs),
                attempts=attempts,
                delay=delay,
                backoff=backoff,
                exceptions=exceptions,
                name=func.__name__,
            )

        return wrapper

    return decorator


async def run_with_timeout(
    coro: Awaitable[T],
    timeout: Optional[float],
    default: Optional[T] = None,
    raise_on_timeout: bool = False,
) -> Optional[T]:
    """
    Run coroutine with timeout, returning default on timeout.

    With `raise_on_timeout` the asyncio.TimeoutError propagates instead.

    Example:
        status = await run_with_timeout(backend.health_check(), timeout=5.0,
                                        default=HealthStatus.UNKNOWN)
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Operation timed out after {timeout}s")
        if raise_on_timeout:
            raise
        return default
