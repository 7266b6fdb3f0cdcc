"""Retry Policy with exponential backoff for sandbox operations.

This module provides retry logic with configurable backoff strategies
for transient sandbox operations. Errors the predicate rejects, such as a
provider-confirmed not-found, are re-raised on the first attempt.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from src.domain.model.sandbox.exceptions import is_retryable_error
from src.domain.model.sandbox.operation_budget import OperationBudget

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Retry policy with exponential backoff for sandbox operations.

    Attributes:
        max_attempts: Maximum number of attempts (including first)
        base_delay: Initial delay in seconds before first retry
        max_delay: Maximum delay between retries
        backoff_factor: Multiplier for delay after each attempt
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        backoff_factor: float = 2.0,
        should_retry: Callable[[Exception], bool] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the retry policy.

        Args:
            max_attempts: Maximum number of attempts (1-10)
            base_delay: Initial delay in seconds (0-60)
            max_delay: Maximum delay in seconds (0-300)
            backoff_factor: Multiplier for exponential backoff (1-10)
            should_retry: Optional custom retry predicate
            sleep: Awaitable sleep used between attempts

        Raises:
            ValueError: If parameters are out of valid range
        """
        if not 1 <= max_attempts <= 10:
            raise ValueError(f"max_attempts must be between 1 and 10, got {max_attempts}")

        if not 0 <= base_delay <= 60:
            raise ValueError(f"base_delay must be between 0 and 60, got {base_delay}")

        if not 0 <= max_delay <= 300:
            raise ValueError(f"max_delay must be between 0 and 300, got {max_delay}")

        if not 1 <= backoff_factor <= 10:
            raise ValueError(f"backoff_factor must be between 1 and 10, got {backoff_factor}")

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self._should_retry = should_retry or is_retryable_error
        self._sleep = sleep

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay after a failed attempt.

        Args:
            attempt: The failed attempt number (0-indexed)

        Returns:
            Delay in seconds, capped at max_delay
        """
        delay = self.base_delay * (self.backoff_factor**attempt)
        return min(delay, self.max_delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        on_retry: Callable[[Exception, int, float], None] | None = None,
        budget: OperationBudget | None = None,
    ) -> T:
        """
        Execute an operation with retry logic.

        Args:
            operation: A callable that returns the async operation to execute
            on_retry: Optional callback called after each failed attempt
                Receives (error, attempt_number, delay_seconds)
            budget: Optional overall budget checked before every attempt

        Returns:
            The result of the operation

        Raises:
            OperationTimeoutError: If the budget runs out between attempts
            Exception: The last exception if all attempts fail
        """
        for attempt in range(self.max_attempts):
            if budget is not None:
                budget.check("retry")
            try:
                return await operation()
            except Exception as error:
                is_last_attempt = attempt >= self.max_attempts - 1
                if is_last_attempt or not self._should_retry(error):
                    logger.debug(
                        f"Giving up after attempt {attempt + 1}/{self.max_attempts}: {error}"
                    )
                    raise

                delay = self.calculate_delay(attempt)
                if budget is not None:
                    delay = budget.cap(delay)

                if on_retry:
                    try:
                        on_retry(error, attempt + 1, delay)
                    except Exception as callback_error:
                        logger.warning(f"on_retry callback failed: {callback_error}")

                logger.info(
                    f"Operation failed (attempt {attempt + 1}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {error}"
                )
                await self._sleep(delay)

        raise AssertionError("unreachable")
