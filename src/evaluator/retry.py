import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from .config import RETRY_BASE_DELAY, RETRY_MAX_ATTEMPTS, RETRY_MAX_DELAY

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryResult(Generic[T]):
    """Result from retry_with_backoff including retry statistics.

    Attributes:
        result: The actual return value from the wrapped function
        retry_count: Number of retries that occurred (0 = success on first try)
    """
    result: T
    retry_count: int


class RetriesExhausted(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, last_error: Exception, attempts: int):
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts


# ==============================================================================
# EXPONENTIAL BACKOFF RETRY WRAPPER (Feature: rate-limit-retry)
# ==============================================================================
# 1. Only errors accepted by `is_retryable` are retried, others raise at once
# 2. Delay doubles each attempt, capped at RETRY_MAX_DELAY
# 3. Random 0-10% jitter keeps concurrent judge calls from retrying in lockstep
# ==============================================================================
async def retry_with_backoff(func, *args, max_attempts=RETRY_MAX_ATTEMPTS, base_delay=RETRY_BASE_DELAY,
                             is_retryable: Callable[[Exception], bool],
                             on_retry: Optional[Callable] = None, **kwargs) -> RetryResult:
    """
    Retry an async function with exponential backoff.

    Args:
        func: The async function to call
        max_attempts: Total number of attempts, including the first one
        base_delay: Base delay in seconds (doubled each retry)
        is_retryable: Predicate deciding whether an error is worth retrying
        on_retry: Optional async callback(attempt, max_attempts, wait_time, error)

    Returns:
        RetryResult with the function's return value and retry statistics

    Raises:
        The original exception for non-retryable errors, RetriesExhausted once
        all attempts failed with retryable ones
    """
    max_attempts = max(1, max_attempts)
    last_exception = None
    retry_count = 0

    for attempt in range(max_attempts):
        try:
            result = await func(*args, **kwargs)
            return RetryResult(result=result, retry_count=retry_count)
        except Exception as e:
            if not is_retryable(e):
                raise

            last_exception = e
            if attempt < max_attempts - 1:
                retry_count += 1
                delay = min(base_delay * (2 ** attempt), RETRY_MAX_DELAY)
                wait_time = delay + random.uniform(0, delay * 0.1)

                logger.warning(
                    f"Retryable error (attempt {attempt + 1}/{max_attempts}). "
                    f"Retrying in {wait_time:.1f}s... Error: {str(e)[:100]}"
                )

                if on_retry:
                    try:
                        await on_retry(attempt + 1, max_attempts, wait_time, str(e)[:100])
                    except Exception as cb_err:
                        logger.warning(f"on_retry callback failed: {cb_err}")

                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Max attempts ({max_attempts}) exceeded: {str(e)[:200]}")

    raise RetriesExhausted(last_exception, max_attempts)
