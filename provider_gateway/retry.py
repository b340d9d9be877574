"""
Retry with exponential backoff for provider calls
"""
import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

from core.config import get_settings
from core.logging import get_logger

from .exceptions import RateLimitError, is_retryable
from .types import RetryConfig, RetryResult

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def default_retry_config() -> RetryConfig:
    """Retry policy from settings"""
    settings = get_settings()
    return RetryConfig(
        max_attempts=settings.retry_max_attempts,
        base_delay_ms=settings.retry_base_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        jitter=settings.retry_jitter,
    )


class RetryController:
    """
    Runs a call, retrying transient failures with capped exponential backoff.

    Only errors classified as retryable are retried. A ``RateLimitError`` that
    carries a ``retry_after`` hint waits at least that long (capped at
    ``max_delay_ms``) instead of the computed backoff.
    """

    def __init__(self, sleep: Optional[Sleep] = None, rng: Optional[random.Random] = None):
        self.logger = get_logger("gateway.retry", domain="gateway")
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    def backoff_ms(self, attempt: int, config: RetryConfig) -> float:
        """Delay before the attempt after ``attempt`` (1-based)"""
        delay = min(config.max_delay_ms, config.base_delay_ms * (2 ** (attempt - 1)))
        if config.jitter:
            # Full jitter
            delay = self._rng.uniform(0, delay)
        return delay

    def delay_ms(self, error: BaseException, attempt: int, config: RetryConfig) -> float:
        """Delay after a failed attempt, honouring provider retry-after hints"""
        if isinstance(error, RateLimitError) and error.retry_after:
            return min(float(config.max_delay_ms), error.retry_after * 1000)
        return self.backoff_ms(attempt, config)

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        config: Optional[RetryConfig] = None,
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> RetryResult[T]:
        """
        Execute ``fn`` with retries

        Args:
            fn: Zero-argument coroutine function performing one attempt
            config: Retry policy, settings defaults when omitted
            on_attempt: Called with the attempt number before each attempt

        Returns:
            RetryResult with the value and the number of attempts made

        Raises:
            The last error when it is not retryable or attempts are exhausted
        """
        config = config or default_retry_config()
        if config.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        total_delay_ms = 0.0
        attempt = 0

        while True:
            attempt += 1
            if on_attempt is not None:
                on_attempt(attempt)

            try:
                value = await fn()
                return RetryResult(value=value, attempts=attempt, total_delay_ms=total_delay_ms)

            except Exception as e:
                if not is_retryable(e):
                    raise
                if attempt >= config.max_attempts:
                    self.logger.warning(f"Giving up after {attempt} attempts: {e}")
                    raise

                delay = self.delay_ms(e, attempt, config)
                total_delay_ms += delay
                self.logger.warning(
                    f"Attempt {attempt}/{config.max_attempts} failed ({e.__class__.__name__}), "
                    f"retrying in {delay:.0f}ms"
                )
                await self._sleep(delay / 1000)
