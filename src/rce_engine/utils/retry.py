"""
Retry and polling helpers.

``retry_async`` backs off exponentially between attempts (used by the
control client while a restarted recorder comes back up); ``poll_until``
checks a condition at a fixed interval (used while waiting for the control
socket and the app port to be released).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Attributes:
        max_attempts: Total attempts, including the first
        initial_delay_ms: Delay after the first failure
        max_delay_ms: Upper bound for the delay
        backoff_multiplier: Delay growth per failure
        retry_on: Exceptions that trigger another attempt; others propagate
        on_retry: Called with (attempt, error) before each wait
    """
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    retry_on: Tuple[Type[Exception], ...] = (Exception,)
    on_retry: Optional[Callable[[int, Exception], None]] = None

    def delays(self):
        """Delays (ms) to wait after each failed attempt but the last."""
        delay = float(self.initial_delay_ms)
        for _ in range(self.max_attempts - 1):
            yield delay
            delay = min(delay * self.backoff_multiplier, self.max_delay_ms)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    config: RetryConfig,
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    Await ``func(*args, **kwargs)`` until it succeeds or attempts run out.

    Raises:
        The error of the last attempt
    """
    attempt = 1
    for delay_ms in config.delays():
        try:
            return await func(*args, **kwargs)
        except config.retry_on as e:
            logger.warning(f"Attempt {attempt}/{config.max_attempts} failed: {e}. Retrying in {delay_ms:.0f}ms...")
            if config.on_retry:
                config.on_retry(attempt, e)
            await asyncio.sleep(delay_ms / 1000)
        attempt += 1
    return await func(*args, **kwargs)


async def poll_until(
    predicate: Callable[[], Awaitable[bool]],
    attempts: int,
    interval_ms: int,
    description: str = "condition",
) -> bool:
    """
    Poll an async predicate at a fixed interval.

    Returns:
        True if the condition held within ``attempts`` checks, False otherwise
    """
    for attempt in range(1, attempts + 1):
        if await predicate():
            return True
        logger.info(f"Waiting for {description}... ({attempt}/{attempts})")
        await asyncio.sleep(interval_ms / 1000)
    return False
