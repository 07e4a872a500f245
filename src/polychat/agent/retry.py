"""
Shared retry policy for backend calls and truncation escalation.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry an async operation while a predicate says the error is retryable.

    ``operation`` receives the zero-based attempt number so callers can
    escalate (e.g. truncate harder) on later attempts. Waits grow
    exponentially from ``backoff_seconds`` up to ``max_backoff_seconds``;
    a zero ``backoff_seconds`` retries immediately. The last error is
    re-raised once attempts run out.
    """

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    name: str = "operation"

    def _log_retry(self, state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            "Retrying after error",
            operation=self.name,
            attempt=state.attempt_number,
            max_attempts=max(1, self.max_attempts),
            error=str(error),
        )

    def retrying(self, is_retryable: Callable[[BaseException], bool]) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.max_backoff_seconds),
            retry=retry_if_exception(is_retryable),
            before_sleep=self._log_retry,
        )

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        is_retryable: Callable[[BaseException], bool],
    ) -> T:
        async for attempt in self.retrying(is_retryable):
            with attempt:
                return await operation(attempt.retry_state.attempt_number - 1)
        raise RuntimeError(f"{self.name} did not run")
