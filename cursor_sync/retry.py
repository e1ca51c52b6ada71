"""Exponential backoff around upstream API calls.

Transport failures, timeouts and 5xx answers are retried with a growing
delay. A 429 is retried after the server's ``Retry-After`` when one was
sent. Anything else (auth failures, other 4xx, bad input) is raised on the
first attempt.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Optional, Type

import aiohttp

from cursor_sync.exceptions import (
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    RetryExhaustedError,
    ServerError,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: FrozenSet[Type[BaseException]] = frozenset({
    NetworkError,
    ServerError,
    RequestTimeoutError,
    aiohttp.ClientConnectorError,
    asyncio.TimeoutError,
})


@dataclass
class RetryConfig:
    """How many times to try a call and how long to wait in between."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_factor: float = 2.0
    jitter: bool = True
    retryable_exceptions: FrozenSet[Type[BaseException]] = field(
        default_factory=lambda: TRANSIENT_ERRORS
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def backoff(self, failures: int) -> float:
        """Seconds to wait after the given number of consecutive failures."""
        wait = min(self.base_delay * self.exponential_factor ** (failures - 1), self.max_delay)
        if self.jitter:
            wait *= random.uniform(0.9, 1.1)
        return max(0.0, wait)


class RetryHandler:
    """Runs a coroutine function under a RetryConfig."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep

    def _should_retry(self, error: Exception) -> bool:
        if isinstance(error, RateLimitError):
            return True
        return isinstance(error, tuple(self.config.retryable_exceptions))

    def _wait_for(self, error: Exception, failures: int) -> float:
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return float(error.retry_after)
        return self.config.backoff(failures)

    async def execute_with_retry(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        **kwargs
    ) -> Any:
        """Await ``func(*args, **kwargs)`` until it succeeds or attempts run out.

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error
        """
        limit = self.config.max_attempts
        failures = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except Exception as error:
                if not self._should_retry(error):
                    raise
                failures += 1
                if failures >= limit:
                    raise RetryExhaustedError(
                        f"All {limit} retry attempts exhausted: {error}",
                        attempts=failures,
                        last_exception=error,
                    ) from error

                wait = self._wait_for(error, failures)
                logger.warning(
                    f"{type(error).__name__} on attempt {failures}/{limit}: {error}; "
                    f"next try in {wait:.2f}s"
                )
                await self._sleep(wait)
