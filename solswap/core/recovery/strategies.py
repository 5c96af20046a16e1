"""
Recovery Strategies

Bounded retry with exponential backoff. Only RecoverableError is retried;
anything else propagates on the first occurrence.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Optional, TypeVar

from .errors import RecoverableError, classify_error

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, Exception, float], None]


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = False
    jitter_factor: float = 0.1

    def get_delay(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        delay = min(
            self.initial_delay_seconds * (self.exponential_base ** attempt),
            self.max_delay_seconds,
        )
        if self.jitter:
            jitter_range = delay * self.jitter_factor
            delay += random.uniform(-jitter_range, jitter_range)
        return max(delay, 0)


class RetryExhaustedError(Exception):
    """All attempts failed with recoverable errors."""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class ExponentialBackoffStrategy:
    """
    Retry strategy with exponential backoff.

    The operation is re-awaited as-is on each attempt, so callers must pass an
    operation whose inputs are fixed for the whole sequence.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        """First attempt plus the configured retries."""
        return self.config.max_retries + 1

    def should_retry(self, error: Exception, attempt: int) -> bool:
        if attempt >= self.config.max_retries:
            return False
        if isinstance(error, RecoverableError):
            return True
        return False

    async def execute(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str = "operation",
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except RecoverableError as e:
                last_error = e
                if not self.should_retry(e, attempt):
                    break

                delay = self.config.get_delay(attempt)
                self.logger.warning(
                    f"{operation_name} attempt {attempt + 1}/{self.max_attempts} "
                    f"failed: {e}. Retrying in {delay:.1f}s"
                )
                if on_retry:
                    on_retry(attempt + 1, e, delay)
                await self._sleep(delay)

        assert last_error is not None
        context = classify_error(last_error)
        self.logger.error(
            f"{operation_name} failed after {self.max_attempts} attempts: "
            f"{last_error} ({context.kind.value})"
        )
        raise RetryExhaustedError(self.max_attempts, last_error)
