"""
Retry helpers built on tenacity.

The migration manager never retries on its own. These helpers exist for
callers that explicitly opt into waiting, e.g. the CLI's ``--lock-wait``
polling for a migration lock held by another deploy replica.

Usage:
    from stratum.core.retry import RetryConfig, call_with_deadline

    config = RetryConfig(retry_on=(MigrationInProgressError,))
    version = await call_with_deadline(manager.up, deadline_seconds=60, config=config)
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
    wait_random_exponential,
)

from stratum.core.errors import TransientError

log = structlog.get_logger()

DEFAULT_MIN_WAIT_SECONDS = 0.5
DEFAULT_MAX_WAIT_SECONDS = 10.0
DEFAULT_EXPONENTIAL_MULTIPLIER = 1.0
DEFAULT_JITTER = True

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        min_wait_seconds: Minimum wait time between attempts.
        max_wait_seconds: Maximum wait time between attempts.
        exponential_multiplier: Multiplier for exponential backoff.
        jitter: Whether to add randomness to wait times.
        retry_on: Exception types to retry on (default: TransientError).
    """

    min_wait_seconds: float = DEFAULT_MIN_WAIT_SECONDS
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS
    exponential_multiplier: float = DEFAULT_EXPONENTIAL_MULTIPLIER
    jitter: bool = DEFAULT_JITTER
    retry_on: tuple[Type[BaseException], ...] = field(
        default_factory=lambda: (TransientError,)
    )

    def wait_strategy(self) -> Any:
        """Build the tenacity wait strategy for this config."""
        if self.jitter:
            return wait_random_exponential(
                multiplier=self.exponential_multiplier,
                min=self.min_wait_seconds,
                max=self.max_wait_seconds,
            )
        return wait_exponential(
            multiplier=self.exponential_multiplier,
            min=self.min_wait_seconds,
            max=self.max_wait_seconds,
        )


def _log_retry(log_context: Optional[dict[str, Any]] = None) -> Callable[[RetryCallState], None]:
    """Create a before_sleep callback that logs the failed attempt."""
    context = log_context or {}

    def callback(state: RetryCallState) -> None:
        exception = state.outcome.exception() if state.outcome else None
        log.warning(
            "retry_attempt",
            attempt=state.attempt_number,
            error=str(exception) if exception else None,
            error_type=type(exception).__name__ if exception else None,
            wait_seconds=state.next_action.sleep if state.next_action else 0,
            **context,
        )

    return callback


async def call_with_deadline(
    operation: Callable[[], Awaitable[T]],
    deadline_seconds: float,
    config: Optional[RetryConfig] = None,
    log_context: Optional[dict[str, Any]] = None,
) -> T:
    """Call ``operation`` until it succeeds or ``deadline_seconds`` pass.

    Only errors in ``config.retry_on`` are retried; the last one is
    re-raised once the deadline is exceeded. A deadline of 0 means a
    single attempt.
    """
    config = config or RetryConfig()

    if deadline_seconds <= 0:
        return await operation()

    async for attempt in AsyncRetrying(
        stop=stop_after_delay(deadline_seconds),
        wait=config.wait_strategy(),
        retry=retry_if_exception_type(config.retry_on),
        before_sleep=_log_retry(log_context),
        reraise=True,
    ):
        with attempt:
            return await operation()

    raise AssertionError("unreachable")  # pragma: no cover
