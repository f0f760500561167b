"""
Retry with exponential backoff for read-only network queries.

Only calls that do not change network state may go through here. Account
creation, trust line changes and payments are never retried: the network
does not guarantee idempotent resubmission.

Usage:
    from issuance_bridge.retry import retry_async, READ_RETRY_CONFIG

    balance = await retry_async(
        client.get_balance, account_id, "EUR", config=READ_RETRY_CONFIG
    )
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, ParamSpec, Type, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) added to delays
        retryable_exceptions: Exception types that trigger retries
        non_retryable_exceptions: Exception types that are raised immediately
    """

    max_retries: int = 3
    base_delay: float = 0.2
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    retryable_exceptions: tuple[Type[BaseException], ...] = (Exception,)
    non_retryable_exceptions: tuple[Type[BaseException], ...] = ()

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number `attempt` (0-based)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        # Non-retryable takes precedence
        if isinstance(exception, self.non_retryable_exceptions):
            return False
        return isinstance(exception, self.retryable_exceptions)


READ_RETRY_CONFIG = RetryConfig(max_retries=3, base_delay=0.2, max_delay=5.0, jitter=0.2)

NO_RETRY_CONFIG = RetryConfig(max_retries=0)


@dataclass
class RetryStats:
    """Statistics about one retried call."""

    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[BaseException] = None


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    stats: Optional[RetryStats] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    When every attempt fails the last exception is re-raised unchanged, so
    callers see the same error they would without retries.

    Args:
        func: The async function to execute
        *args: Positional arguments for the function
        config: Retry configuration (uses defaults if None)
        stats: Optional RetryStats filled in while retrying
        **kwargs: Keyword arguments for the function
    """
    if config is None:
        config = RetryConfig()
    if stats is None:
        stats = RetryStats()

    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        stats.attempts = attempt + 1

        try:
            result = await func(*args, **kwargs)
            stats.success = True
            return result

        except Exception as e:
            stats.last_exception = e

            if attempt >= config.max_retries or not config.should_retry(e):
                raise

            delay = config.calculate_delay(attempt)
            stats.total_delay += delay

            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for "
                f"{name} after {type(e).__name__}: {e}. "
                f"Waiting {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
