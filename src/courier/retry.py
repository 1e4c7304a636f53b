"""
Retry Policy Implementation

Bounded retry with deterministic backoff for broker operations. Failures are
classified as transient (retried while budget remains) or permanent (raised
immediately without consuming budget).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from .exceptions import RetriesExhausted, TransientBrokerFailure

T = TypeVar("T")
logger = logging.getLogger(__name__)

DEFAULT_TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TransientBrokerFailure,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


class BackoffKind(Enum):
    """Backoff strategy types."""

    CONSTANT = "constant"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class BackoffStrategy(ABC):
    """
    Delay before the next attempt.

    Implementations must be deterministic for a given attempt number and
    monotonically non-decreasing in it.
    """

    @abstractmethod
    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""

    def __call__(self, attempt: int) -> float:
        return self.delay(attempt)


class ConstantBackoff(BackoffStrategy):
    """Same delay after every attempt."""

    def __init__(self, base_delay: float = 0.0):
        self.base_delay = max(0.0, base_delay)

    def delay(self, attempt: int) -> float:
        return self.base_delay


class LinearBackoff(BackoffStrategy):
    """Delay grows by a fixed increment per attempt."""

    def __init__(self, base_delay: float = 0.1, increment: float | None = None, max_delay: float = 5.0):
        self.base_delay = max(0.0, base_delay)
        self.increment = self.base_delay if increment is None else max(0.0, increment)
        self.max_delay = max_delay

    def delay(self, attempt: int) -> float:
        return min(self.base_delay + self.increment * (attempt - 1), self.max_delay)


class ExponentialBackoff(BackoffStrategy):
    """Delay multiplies per attempt, capped at ``max_delay``."""

    def __init__(self, base_delay: float = 0.1, multiplier: float = 2.0, max_delay: float = 5.0):
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0 to keep backoff non-decreasing")
        self.base_delay = max(0.0, base_delay)
        self.multiplier = multiplier
        self.max_delay = max_delay

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


class CallableBackoff(BackoffStrategy):
    """
    Adapts a plain ``attempt -> seconds`` function.

    The delay for attempt n is the largest value the function returned for
    attempts 1..n, so the schedule never shrinks.
    """

    def __init__(self, func: Callable[[int], float]):
        self.func = func

    def delay(self, attempt: int) -> float:
        return max([0.0, *(float(self.func(n)) for n in range(1, attempt + 1))])


def create_backoff(
    kind: BackoffKind | str,
    base_delay: float = 0.1,
    max_delay: float = 5.0,
    multiplier: float = 2.0,
) -> BackoffStrategy:
    """Create a backoff strategy by name."""
    if isinstance(kind, str):
        kind = BackoffKind(kind)

    if kind == BackoffKind.CONSTANT:
        return ConstantBackoff(base_delay)
    if kind == BackoffKind.LINEAR:
        return LinearBackoff(base_delay, max_delay=max_delay)
    return ExponentialBackoff(base_delay, multiplier=multiplier, max_delay=max_delay)


class RetryPolicy:
    """
    Wraps a fallible async operation with a bounded retry budget.

    ``retry_count`` is the number of retries after the first attempt, so an
    operation that always fails transiently is attempted ``retry_count + 1``
    times. State lives in each ``execute`` call; one policy instance is safe to
    share across concurrent publishes.
    """

    def __init__(
        self,
        retry_count: int = 3,
        backoff: BackoffStrategy | Callable[[int], float] | None = None,
        transient_exceptions: tuple[type[BaseException], ...] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if retry_count < 0:
            raise ValueError("retry_count must be non-negative")

        if backoff is None:
            backoff = ExponentialBackoff()
        elif not isinstance(backoff, BackoffStrategy):
            backoff = CallableBackoff(backoff)

        self.retry_count = retry_count
        self.backoff = backoff
        self.transient_exceptions = DEFAULT_TRANSIENT_EXCEPTIONS + tuple(transient_exceptions)
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.retry_count + 1

    def is_transient(self, error: BaseException) -> bool:
        """Check if an error may be retried."""
        return isinstance(error, self.transient_exceptions)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        on_attempt: Callable[[int], None] | None = None,
    ) -> T:
        """
        Run ``operation`` until it succeeds, fails permanently or the budget runs out.

        Args:
            operation: Zero-argument coroutine function
            on_attempt: Optional callback receiving each attempt number

        Returns:
            The operation result

        Raises:
            RetriesExhausted: If every attempt failed transiently
            Exception: The first permanent error, unchanged
        """
        attempt = 0
        while True:
            attempt += 1
            if on_attempt:
                on_attempt(attempt)

            try:
                result = await operation()
            except Exception as e:
                if not self.is_transient(e):
                    logger.debug("Attempt %d failed permanently: %s", attempt, e)
                    raise

                if attempt >= self.max_attempts:
                    logger.warning(
                        "Giving up after %d attempts, last error: %s", attempt, e
                    )
                    raise RetriesExhausted(attempt, e) from e

                delay = self.backoff.delay(attempt)
                logger.warning(
                    "Attempt %d/%d failed transiently: %s; retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    e,
                    delay,
                )
                if delay > 0:
                    await self._sleep(delay)
                continue

            if attempt > 1:
                logger.info("Operation succeeded on attempt %d", attempt)
            return result


# Common retry policies
NO_RETRY_POLICY = RetryPolicy(retry_count=0)

DEFAULT_RETRY_POLICY = RetryPolicy()
