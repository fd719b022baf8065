"""
Retry Executor — bounded attempts with exponential backoff and jitter.

Composes under the circuit breaker: the breaker wraps an entire retry
sequence, so a sequence that exhausts its attempts counts as one breaker
failure rather than max_attempts failures.
"""

import asyncio
import functools
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from resilience_kernel.errors import (
    CircuitOpenError,
    NonRetryableError,
    RetryExhaustedError,
    describe_error,
)
from resilience_kernel.models.config import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


def default_is_retryable(error: BaseException) -> bool:
    """Everything is worth another attempt except explicit fail-fast errors."""
    return not isinstance(error, (NonRetryableError, CircuitOpenError))


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> float:
    """Backoff before the attempt after `attempt` (1-based), jitter included."""
    delay = min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)
    return delay + rand() * delay * policy.jitter_ratio


async def retry(
    op: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    is_retryable: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Sleep = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    """
    Run `op` until it succeeds or the policy gives up.

    Raises NonRetryableError as soon as the classifier rejects an error,
    and RetryExhaustedError (wrapping the last error) after max_attempts.
    """
    policy = policy or RetryPolicy()
    classify = is_retryable or default_is_retryable
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await op()
        except Exception as error:
            last_error = error
            retryable = classify(error)
            will_retry = retryable and attempt < policy.max_attempts
            logger.warning(
                "Operation failed (attempt %d/%d): %s [retryable=%s, will_retry=%s]",
                attempt, policy.max_attempts, describe_error(error), retryable, will_retry,
            )

            if not retryable:
                if isinstance(error, NonRetryableError):
                    raise
                raise NonRetryableError(describe_error(error), cause=error) from error

            if not will_retry:
                break

            if on_retry is not None:
                on_retry(attempt, error)

            delay = compute_delay(attempt, policy, rand)
            logger.debug("Waiting %.3fs before retry %d", delay, attempt + 1)
            await sleep(delay)
            continue

        if attempt > 1:
            logger.info("Operation succeeded after %d attempts", attempt)
        return result

    raise RetryExhaustedError(last_error, policy.max_attempts) from last_error


class RetryExecutor:
    """A retry policy bound to its classifier and callbacks."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        is_retryable: Optional[Callable[[BaseException], bool]] = None,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        sleep: Sleep = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.policy = policy or RetryPolicy()
        self.is_retryable = is_retryable
        self.on_retry = on_retry
        self._sleep = sleep
        self._rand = rand

    async def run(self, op: Callable[[], Awaitable[T]]) -> T:
        return await retry(
            op,
            self.policy,
            is_retryable=self.is_retryable,
            on_retry=self.on_retry,
            sleep=self._sleep,
            rand=self._rand,
        )


def with_retry(policy: Optional[RetryPolicy] = None, **retry_kwargs: Any):
    """Decorator making an async function retry under `policy`."""

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry(lambda: fn(*args, **kwargs), policy, **retry_kwargs)

        return wrapper

    return decorator
