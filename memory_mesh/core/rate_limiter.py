"""
Rate limiting and bounded retry for external AI calls.

The rate limiter paces job starts and provider requests. The retry policy
wraps a single provider call with exponential backoff plus jitter and only
retries errors classified as retryable.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from memory_mesh.core.config import settings
from memory_mesh.core.errors import RetryExhaustedError, is_retryable

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Per-minute request limiter with a minimum interval between requests.

    Shared by the worker pool (job starts) and the Gemini provider
    (API requests).
    """

    def __init__(self, max_requests_per_minute: int = 60):
        """
        Initialize rate limiter.

        Args:
            max_requests_per_minute: Maximum requests allowed per minute
        """
        if max_requests_per_minute <= 0:
            raise ValueError("max_requests_per_minute must be positive")

        self.max_requests_per_minute = max_requests_per_minute
        self.requests: Dict[int, int] = {}  # minute -> request_count
        self.last_request_time = 0.0
        self.min_interval = 60.0 / max_requests_per_minute
        self._lock = asyncio.Lock()

    def _get_current_minute(self) -> int:
        return int(time.time() // 60)

    def _cleanup_old_requests(self) -> None:
        current_minute = self._get_current_minute()
        self.requests = {minute: count for minute, count in self.requests.items()
                         if minute >= current_minute}

    def get_requests_this_minute(self) -> int:
        """Number of requests recorded in the current minute."""
        self._cleanup_old_requests()
        return self.requests.get(self._get_current_minute(), 0)

    def can_make_request(self) -> bool:
        """Check whether another request fits in the current minute."""
        return self.get_requests_this_minute() < self.max_requests_per_minute

    def record_request(self) -> None:
        """Record that a request was made."""
        current_minute = self._get_current_minute()
        self.requests[current_minute] = self.requests.get(current_minute, 0) + 1

    def get_wait_time_until_available(self) -> float:
        """
        Get time to wait until next request can be made.

        Returns:
            float: Seconds to wait, 0 if request can be made immediately
        """
        if self.can_make_request():
            return 0.0
        return 60.0 - (time.time() % 60)

    async def acquire(self) -> None:
        """
        Wait until a request may be made, then record it.

        Enforces the minimum interval between requests and blocks until
        the next minute when the per-minute budget is spent.
        """
        async with self._lock:
            time_since_last = time.time() - self.last_request_time
            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)

            if not self.can_make_request():
                wait_time = self.get_wait_time_until_available()
                logger.warning(f"Rate limit reached, waiting {wait_time:.1f}s")
                await asyncio.sleep(wait_time)

            self.last_request_time = time.time()
            self.record_request()


class RetryPolicy:
    """
    Bounded exponential backoff for retryable provider failures.

    Delay before attempt n+1 is min(base * 2^(n-1), cap) plus uniform jitter
    in [0, jitter]. Fatal errors, including cancellation, propagate on the
    first occurrence. When every attempt fails with a retryable error a
    RetryExhaustedError is raised from the last failure.
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        jitter: Optional[float] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.max_attempts = max_attempts or settings.retry_max_attempts
        self.base_delay = base_delay if base_delay is not None else settings.retry_base_delay
        self.max_delay = max_delay if max_delay is not None else settings.retry_max_delay
        self.jitter = jitter if jitter is not None else settings.retry_jitter
        self.sleep = sleep or asyncio.sleep

    def _before_sleep(self, operation: str) -> Callable[[RetryCallState], None]:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"{operation} attempt {retry_state.attempt_number}/{self.max_attempts} "
                f"failed: {error}. Retrying in {delay:.2f}s"
            )
        return log_retry

    async def call(
        self,
        operation: str,
        func: Callable[..., Awaitable[Any]],
        *args,
        **kwargs
    ) -> Any:
        """
        Run an async callable under the retry policy.

        Args:
            operation: Human readable name used in logs and errors
            func: Coroutine function to call
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Any: Result of the first successful attempt

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error
            Exception: Any non-retryable error, unchanged

        Example:
            >>> policy = RetryPolicy()
            >>> summary = await policy.call("summarize", provider.summarize, text, {})
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay)
            + wait_random(0, self.jitter),
            retry=retry_if_exception(is_retryable),
            before_sleep=self._before_sleep(operation),
            sleep=self.sleep,
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await func(*args, **kwargs)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(f"{operation} exhausted {self.max_attempts} attempts: {last_error}")
            raise RetryExhaustedError(operation, self.max_attempts, last_error) from last_error

        return result


# Global rate limiter instance for provider requests
provider_rate_limiter = RateLimiter(max_requests_per_minute=settings.provider_rate_limit_per_minute)
