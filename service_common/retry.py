"""
Retries for calls made while a service starts, such as fetching the token
issuer's JWKS. Request handling never retries; it fails fast instead.
"""

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from .logging import get_logger

AsyncCallable = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff policy."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Seconds to sleep after failed ``attempt`` (1-based), with up to 10% jitter."""
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay += random.uniform(-0.1, 0.1) * delay
        return max(delay, 0.0)


class RetryError(Exception):
    """Every attempt failed; ``last_exception`` is the final failure."""

    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def retry_on_exception(
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    config: Optional[RetryConfig] = None,
) -> Callable[[AsyncCallable], AsyncCallable]:
    """Retry the decorated coroutine function on ``exceptions``.

    Other exceptions propagate on the first failure.
    """
    policy = config or RetryConfig()

    def decorator(func: AsyncCallable) -> AsyncCallable:
        logger = get_logger(f"service_common.retry.{func.__name__}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= policy.max_attempts:
                        logger.error("Giving up", attempts=attempt, error=str(e))
                        raise RetryError(
                            f"{func.__name__} failed after {attempt} attempts",
                            last_exception=e,
                            attempts=attempt,
                        ) from e

                    delay = policy.delay(attempt)
                    logger.warning("Attempt failed, retrying", attempt=attempt, delay=round(delay, 3), error=str(e))
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
