"""
Retry policy used for provider calls that are safe to repeat.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .logger import logger


def linear_backoff(base_delay: float) -> Callable[[int], float]:
    """Backoff of ``attempt * base_delay`` seconds (1s, 2s, ... for base 1)."""
    def delay(attempt: int) -> float:
        return attempt * base_delay
    return delay


class RetryExhausted(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    """
    Bounded retry with a pluggable backoff and retryable-error predicate.

    Non-retryable errors propagate unchanged on the attempt that raised them.
    Once ``max_attempts`` retryable failures have happened, ``RetryExhausted``
    is raised with the last error attached (and chained).
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=lambda: linear_backoff(1.0))
    is_retryable: Callable[[BaseException], bool] = lambda exc: True
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    async def run(
        self,
        operation: Callable[[int], Awaitable[Any]],
        description: str = "operation",
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> Any:
        """
        Run ``operation(attempt)`` until it succeeds or the budget is spent.

        Args:
            operation: Coroutine function receiving the 1-based attempt number
            description: Label used in log messages
            on_retry: Optional hook called before each backoff sleep

        Returns:
            Whatever the successful attempt returned
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation(attempt)
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                last_error = e
                if attempt >= self.max_attempts:
                    break
                wait_time = self.backoff(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {wait_time:.1f}s: {e}"
                )
                if on_retry:
                    on_retry(attempt, e)
                await self.sleep(wait_time)

        logger.error(f"{description} failed after {self.max_attempts} attempts: {last_error}")
        raise RetryExhausted(self.max_attempts, last_error) from last_error
