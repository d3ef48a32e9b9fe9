# src/notesync/engine/retry.py
"""RetryManager: retry-with-backoff combinator built on tenacity.

Every external call (delta fetch, planet download, boundary fetch, store
merge) goes through execute_with_retry() with a predicate that decides
which exceptions are transient. Non-retryable errors propagate on the
first attempt; retryable ones are retried with exponential backoff and
jitter until max_attempts, then surface as MaxRetriesExceeded. A
throttled call waits at least as long as the service's Retry-After asked,
up to max_delay.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

import httpx
from sqlalchemy.exc import OperationalError
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from notesync.contracts.errors import IngestError, ThrottledError

if TYPE_CHECKING:
    from notesync.core.config import BoundarySettings, RetrySettings

T = TypeVar("T")


class MaxRetriesExceeded(Exception):
    """Raised when max retry attempts are exceeded."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max retries ({attempts}) exceeded: {last_error}")


def is_transient(error: BaseException) -> bool:
    """Default retryable predicate.

    IngestError subclasses declare retryability themselves. Transport-level
    httpx failures (timeouts, resets, DNS) and database busy/locked errors
    are transient; everything else is not.
    """
    if isinstance(error, IngestError):
        return error.retryable
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, OperationalError):
        return True
    return False


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    max_attempts is the TOTAL number of tries, not the number of retries.
    """

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    jitter: float = 1.0  # seconds
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        return cls(max_attempts=1)

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryConfig":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            jitter=settings.jitter_seconds,
            exponential_base=settings.exponential_base,
        )

    @classmethod
    def for_boundaries(cls, settings: "BoundarySettings") -> "RetryConfig":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
            jitter=settings.jitter_seconds,
        )


class RetryAfterWait(wait_base):
    """Backoff that never undercuts a throttling service's Retry-After.

    The wait is the larger of the fallback backoff and the retry_after of
    the last ThrottledError, the latter capped at max_delay.
    """

    def __init__(self, fallback: wait_base, max_delay: float) -> None:
        self._fallback = fallback
        self._max_delay = max_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._fallback(retry_state)
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return delay
        error = outcome.exception()
        if isinstance(error, ThrottledError) and error.retry_after is not None:
            return max(delay, min(error.retry_after, self._max_delay))
        return delay


class RetryManager:
    """Runs an operation with tenacity-driven retries.

    Example:
        manager = RetryManager(RetryConfig(max_attempts=3))

        body = manager.execute_with_retry(
            operation=lambda: fetch(url),
            is_retryable=is_transient,
            on_retry=lambda attempt, error: logger.warning("retrying", attempt=attempt, error=str(error)),
        )
    """

    def __init__(self, config: RetryConfig, *, sleep: Callable[[float], None] | None = None) -> None:
        """Initialize with config.

        Args:
            config: Retry configuration
            sleep: Replacement for time.sleep (tests pass a no-op)
        """
        self._config = config
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[BaseException], bool] = is_transient,
        on_retry: Callable[[int, BaseException], None] | None = None,
    ) -> T:
        """Execute operation with retry logic.

        Args:
            operation: Operation to execute
            is_retryable: Function to check if error is retryable
            on_retry: Optional callback before each retry (attempt, error)

        Returns:
            Result of operation

        Raises:
            MaxRetriesExceeded: If max attempts exceeded
            Exception: If non-retryable error occurs
        """
        attempt = 0
        last_error: BaseException | None = None

        retrying_kwargs: dict[str, Callable[[float], None]] = {}
        if self._sleep is not None:
            retrying_kwargs["sleep"] = self._sleep

        try:
            for attempt_state in Retrying(
                stop=stop_after_attempt(self._config.max_attempts),
                wait=RetryAfterWait(
                    wait_exponential_jitter(
                        initial=self._config.base_delay,
                        max=self._config.max_delay,
                        exp_base=self._config.exponential_base,
                        jitter=self._config.jitter,
                    ),
                    self._config.max_delay,
                ),
                retry=retry_if_exception(is_retryable),
                reraise=False,  # RetryError is converted to MaxRetriesExceeded below
                **retrying_kwargs,
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    try:
                        return operation()
                    except Exception as e:
                        last_error = e
                        if is_retryable(e) and on_retry and attempt < self._config.max_attempts:
                            on_retry(attempt, e)
                        raise

        except RetryError as e:
            final_error = last_error or e.last_attempt.exception()
            assert final_error is not None, "RetryError without exception is impossible"
            raise MaxRetriesExceeded(attempt, final_error) from e

        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover
