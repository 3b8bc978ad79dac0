"""
Retry Manager for transient ACME and network failures.

Retries an async operation with exponentially increasing waits while the
failure is classified as transient (timeouts, 5xx, stale nonces).
Terminal errors are returned immediately. ACME rate limits are terminal
and left to the renewal scheduler's backoff.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .config import RetryConfig

T = TypeVar("T")


@dataclass
class RetryResult(Generic[T]):
    """Result of a retry operation."""

    success: bool
    result: Optional[T]
    attempts: int
    last_error: Optional[Exception]


class RetryManager:
    """Exponential backoff around async operations."""

    TRANSIENT_ERROR_CODES = frozenset({
        "timeout",
        "server_error",
        "network_error",
        "bad_nonce",
    })

    def __init__(
        self,
        config: RetryConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Args:
            config: Retry count, delays and extra retryable codes
            sleep: Awaitable used between attempts (replaceable in tests)
        """
        self._config = config
        self._sleep = sleep

    def calculate_delay(self, attempt: int) -> float:
        """
        Wait before retry number ``attempt`` (0-indexed).

        delay(n) = base_delay * 2^n, capped at max_delay.
        """
        delay = self._config.base_delay_seconds * (2 ** attempt)
        return min(delay, self._config.max_delay_seconds)

    def is_retryable_error(self, error: Exception) -> bool:
        """True when the error carries a transient error code."""
        code = getattr(error, "code", None)
        if code is None:
            return False
        code = code.value if hasattr(code, "value") else str(code)
        return code in self._config.retryable_errors or code in self.TRANSIENT_ERROR_CODES

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        is_retryable: Optional[Callable[[Exception], bool]] = None,
    ) -> RetryResult[T]:
        """
        Run ``operation`` until it succeeds, fails terminally, or retries run out.

        Args:
            operation: The async operation to execute
            is_retryable: Classifier for exceptions; defaults to
                ``is_retryable_error``

        Returns:
            RetryResult with the outcome and number of attempts
        """
        classify = is_retryable or self.is_retryable_error
        max_attempts = self._config.max_retries + 1
        last_error: Optional[Exception] = None
        attempts = 0

        while attempts < max_attempts:
            try:
                result = await operation()
                return RetryResult(success=True, result=result, attempts=attempts + 1, last_error=None)
            except Exception as e:
                last_error = e
                attempts += 1
                if not classify(e) or attempts >= max_attempts:
                    break
                await self._sleep(self.calculate_delay(attempts - 1))

        return RetryResult(success=False, result=None, attempts=attempts, last_error=last_error)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        is_retryable: Optional[Callable[[Exception], bool]] = None,
    ) -> T:
        """
        Like ``execute_with_retry`` but returns the value or re-raises the last error.
        """
        outcome = await self.execute_with_retry(operation, is_retryable)
        if outcome.success:
            return outcome.result
        assert outcome.last_error is not None
        raise outcome.last_error
