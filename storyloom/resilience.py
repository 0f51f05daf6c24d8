# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Resilience utilities for retry, backoff and deadlines.

This module provides reusable retry decorators and helpers for handling
transient failures in provider calls (image generation cascade, moderation).

Key Features:
- Exponential backoff with configurable base and max delays
- Selective retry based on exception type
- Retry attempt logging
- Explicit deadlines for awaitables that may never resolve
"""

import asyncio
from typing import Awaitable, Callable, TypeVar, ParamSpec, Optional, Type
from functools import wraps
from storyloom.logging import StructuredLogger

logger = StructuredLogger(__name__)

T = TypeVar('T')
P = ParamSpec('P')


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        retryable_exceptions: Optional[tuple[Type[Exception], ...]] = None
    ):
        """Initialize retry configuration.

        Args:
            max_retries: Maximum number of retry attempts (0 disables retries)
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds (caps exponential growth)
            retryable_exceptions: Tuple of exception types that should trigger retries.
                                 If None, all exceptions are retryable.
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.retryable_exceptions = retryable_exceptions or (Exception,)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate retry delay using exponential backoff.

        Args:
            attempt: Current attempt number (1-indexed)

        Returns:
            Delay in seconds, capped at max_delay
        """
        # Exponential: base_delay * 2^(attempt-1)
        delay = self.base_delay * (2 ** (attempt - 1))
        return min(delay, self.max_delay)

    def is_retryable(self, exception: Exception) -> bool:
        """Check if an exception should trigger a retry."""
        return isinstance(exception, self.retryable_exceptions)


def with_retry(config: RetryConfig, operation_name: str):
    """Decorator to add retry logic to async functions.

    Implements exponential backoff retry for transient failures and logs
    each retry attempt. The final exception is re-raised unchanged once
    retries are exhausted.

    Args:
        config: RetryConfig specifying retry behavior
        operation_name: Human-readable name for the operation (for logging)

    Returns:
        Decorator function

    Example:
        >>> retry_config = RetryConfig(max_retries=3, base_delay=1.0)
        >>> @with_retry(retry_config, "image_cascade")
        >>> async def run_cascade():
        ...     pass
    """
    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception = None

            for attempt in range(config.max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except Exception as e:
                    last_exception = e

                    if not config.is_retryable(e):
                        logger.warning(
                            f"{operation_name} failed with non-retryable exception",
                            error_type=type(e).__name__,
                            error=str(e),
                            attempt=attempt + 1
                        )
                        raise

                    if attempt >= config.max_retries:
                        logger.error(
                            f"{operation_name} failed after {config.max_retries} retries",
                            error_type=type(e).__name__,
                            error=str(e),
                            total_attempts=attempt + 1
                        )
                        raise

                    delay = config.calculate_delay(attempt + 1)
                    logger.warning(
                        f"{operation_name} failed, retrying in {delay:.2f}s",
                        error_type=type(e).__name__,
                        error=str(e),
                        attempt=attempt + 1,
                        max_retries=config.max_retries,
                        retry_delay_seconds=delay
                    )

                    await asyncio.sleep(delay)

            if last_exception:
                raise last_exception
            raise RuntimeError(f"{operation_name} failed with unknown error")

        return wrapper
    return decorator


async def with_deadline(awaitable: Awaitable[T], timeout: float, operation_name: str) -> T:
    """Await a provider call under an explicit deadline.

    Args:
        awaitable: The coroutine to await
        timeout: Deadline in seconds
        operation_name: Name used when logging an expired deadline

    Returns:
        The awaitable's result

    Raises:
        asyncio.TimeoutError: If the deadline expires (the call is cancelled)
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            f"{operation_name} exceeded its deadline",
            timeout_seconds=timeout
        )
        raise
