"""
Resilience patterns for calls to external rollout collaborators.

This module provides:
- Retry policies with exponential backoff (per-target deploy/revert budgets)
- Timeout handling for deployer and health evaluator calls
- Bulkhead pattern bounding concurrent target operations
"""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import RetryConfig
from ..logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Retry policy with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        min_wait: float = 0.5,
        max_wait: float = 10.0,
        multiplier: float = 2.0,
        retry_exceptions: tuple = (Exception,),
        name: str | None = None,
    ):
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.multiplier = multiplier
        self.retry_exceptions = retry_exceptions
        self.name = name or "retry_policy"

    @classmethod
    def from_config(cls, config: RetryConfig, name: str | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            min_wait=config.min_wait,
            max_wait=config.max_wait,
            multiplier=config.multiplier,
            name=name,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying after failure",
            name=self.name,
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            error=str(exc) or type(exc).__name__,
        )

    def _create_retrying(self) -> AsyncRetrying:
        """Create tenacity AsyncRetrying instance."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.multiplier,
                min=self.min_wait,
                max=self.max_wait,
            ),
            retry=retry_if_exception_type(self.retry_exceptions),
            before_sleep=self._log_retry,
            reraise=True,
        )

    async def execute(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Execute function with retry policy; the last error is re-raised."""
        async for attempt in self._create_retrying():
            with attempt:
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
                return result


class TimeoutHandler:
    """Timeout handler for calls to external systems."""

    def __init__(self, timeout_seconds: float, name: str | None = None):
        self.timeout_seconds = timeout_seconds
        self.name = name or "timeout_handler"

    async def execute(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Execute function with timeout; raises asyncio.TimeoutError."""
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                return await asyncio.wait_for(result, timeout=self.timeout_seconds)
            return result
        except asyncio.TimeoutError:
            logger.warning(
                "Operation timed out",
                name=self.name,
                timeout_seconds=self.timeout_seconds,
            )
            raise


class BulkheadPattern:
    """Bulkhead pattern bounding concurrent operations."""

    def __init__(self, max_concurrent: int = 10, name: str | None = None):
        self.max_concurrent = max_concurrent
        self.name = name or "bulkhead"
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.active_requests = 0

        logger.debug(
            "Bulkhead pattern initialized",
            name=self.name,
            max_concurrent=max_concurrent,
        )

    async def execute(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Execute function with bulkhead protection."""
        async with self.semaphore:
            self.active_requests += 1
            try:
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
                return result
            finally:
                self.active_requests -= 1

    @property
    def available_permits(self) -> int:
        """Get number of available permits."""
        return self.max_concurrent - self.active_requests

    @property
    def is_full(self) -> bool:
        """Check if bulkhead is at capacity."""
        return self.available_permits <= 0


__all__ = ["BulkheadPattern", "RetryPolicy", "TimeoutHandler"]
