"""Bounded retry with exponential backoff for persistence and storage calls."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from csv_worker.config import Settings
from csv_worker.errors import classify_error, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try an operation and how long to wait in between."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    exponential: bool = True

    def wait(self):
        """Tenacity wait strategy: base * 2^(attempt-1), capped at max_delay."""
        if not self.exponential:
            return wait_fixed(self.base_delay)
        return wait_exponential(multiplier=self.base_delay, max=self.max_delay)

    @classmethod
    def from_settings(cls, settings: Settings, max_attempts: int) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )


def _log_before_sleep(operation_name: str) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"⚠️ {operation_name} attempt {retry_state.attempt_number} failed, "
            f"retrying in {delay:.2f}s: {error}"
        )

    return log


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    policy: RetryPolicy,
    sleep: Optional[Sleep] = None,
) -> T:
    """
    Run an async operation, retrying retryable failures with backoff.

    Errors whose kind is not retryable (validation, structural, terminal)
    propagate immediately. After the last attempt the last error propagates.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        operation_name: Label used in log messages
        policy: Attempt ceiling and backoff curve
        sleep: Awaitable sleep, injectable for tests

    Returns:
        The operation's result
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait(),
        retry=retry_if_exception(is_retryable),
        sleep=sleep or asyncio.sleep,
        before_sleep=_log_before_sleep(operation_name),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except Exception as e:
        if is_retryable(e):
            logger.error(f"❌ {operation_name} failed after {policy.max_attempts} attempts: {e}")
        else:
            logger.debug(
                f"{operation_name} raised non-retryable {classify_error(e).value} error: {e}"
            )
        raise
