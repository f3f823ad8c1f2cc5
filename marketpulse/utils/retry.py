"""
Bounded exponential-backoff retries
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .logger import get_logger

logger = get_logger(__name__)


@dataclass
class RetryPolicy:
    """Retry schedule: delay before attempt n+1 is base * multiplier^(n-1), capped"""
    max_retries: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    @classmethod
    def from_config(cls, reliability) -> 'RetryPolicy':
        return cls(
            max_retries=reliability.retry_max_retries,
            base_delay=reliability.retry_base_delay,
            backoff_multiplier=reliability.retry_backoff_multiplier,
            max_delay=reliability.retry_max_delay
        )

    def compute_delay(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)"""
        delay = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay)


class RetryManager:
    """Runs an async operation up to max_retries + 1 times"""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep

    def compute_delay(self, attempt: int) -> float:
        return self.policy.compute_delay(attempt)

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        should_retry: Optional[Callable[[BaseException], bool]] = None,
        on_failure: Optional[Callable[[BaseException, int], None]] = None,
        label: str = "operation"
    ) -> Any:
        """
        Await operation() until it succeeds or attempts run out

        Args:
            operation: Zero-argument coroutine factory
            should_retry: Predicate on the error; False stops immediately
            on_failure: Called with (error, attempt) after every failed attempt
            label: Name used in log lines

        Returns:
            The first successful result

        Raises:
            The error from the last attempt
        """
        total_attempts = self.policy.max_retries + 1

        for attempt in range(1, total_attempts + 1):
            try:
                return await operation()
            except Exception as e:
                if on_failure is not None:
                    on_failure(e, attempt)

                if attempt >= total_attempts:
                    logger.warning(f"{label} failed after {attempt} attempts: {e}")
                    raise
                if should_retry is not None and not should_retry(e):
                    logger.debug(f"{label} not retried after attempt {attempt}: {e}")
                    raise

                delay = self.compute_delay(attempt)
                logger.debug(f"{label} attempt {attempt} failed, retrying in {delay:.2f}s: {e}")
                await self._sleep(delay)
