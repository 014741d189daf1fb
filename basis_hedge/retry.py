# basis_hedge/retry.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryOptions:
    """
    Capped exponential backoff, no jitter. Delays are in seconds.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")


def backoff_delay(attempt: int, options: RetryOptions) -> float:
    """Delay slept after failed attempt `attempt` (1-based), before the next one."""
    return min(options.initial_delay * options.backoff_multiplier ** (attempt - 1), options.max_delay)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    logger: Optional[logging.Logger] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Runs `fn` until it succeeds or `max_attempts` is used up.
    The last error is re-raised as is. Errors outside `retry_on` are raised immediately.
    """
    opts = options or RetryOptions()
    attempt = 1
    while True:
        try:
            return await fn()
        except retry_on as e:
            if attempt >= opts.max_attempts:
                raise
            delay = backoff_delay(attempt, opts)
            if logger:
                logger.debug(
                    f"Retry attempt {attempt}/{opts.max_attempts} failed: {e}. Retrying in {delay:.2f}s..."
                )
            await sleep(delay)
            attempt += 1
