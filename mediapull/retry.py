"""A small retry primitive shared by engine spawning and staged file moves."""
import asyncio
import logging
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar('T')

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often to try an operation and how long to wait in between.

    Attributes:
        max_attempts: Total number of attempts, including the first.
        backoff: Base delay in seconds.
        linear: If True the n-th wait is `backoff * n`, else always `backoff`.
    """
    max_attempts: int = 3
    backoff: float = 1.0
    linear: bool = False

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return self.backoff * attempt if self.linear else self.backoff


async def retry_async(operation: Callable[[], Awaitable[T]], policy: RetryPolicy,
                      retry_on: Tuple[Type[BaseException], ...] = (OSError,),
                      should_retry: Optional[Callable[[BaseException], bool]] = None,
                      on_retry: Optional[Callable[[int, BaseException], Any]] = None) -> T:
    """
    Runs `operation` until it succeeds or the policy is exhausted.

    Args:
        operation: Zero-argument coroutine function to call.
        policy: Attempt count and backoff schedule.
        retry_on: Exception types that may be retried.
        should_retry: Optional finer filter; returning False re-raises at once.
        on_retry: Called with (attempt, error) before each wait. May be async.

    Returns:
        The result of the first successful attempt.

    Raises:
        The last error once attempts run out, or any non-retryable error.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as e:
            if should_retry is not None and not should_retry(e):
                raise
            if attempt >= policy.max_attempts:
                raise
            if on_retry is not None:
                result = on_retry(attempt, e)
                if inspect.isawaitable(result):
                    await result
            delay = policy.delay_for(attempt)
            logger.debug(f"Attempt {attempt}/{policy.max_attempts} failed ({e}); retrying in {delay:.1f}s")
            await asyncio.sleep(delay)
