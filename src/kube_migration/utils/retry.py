"""Retry policy for Kubernetes API calls using tenacity.

Every cluster API call is wrapped in one bounded retry policy: exponential
backoff with jitter for network errors, 5xx responses and throttling (429).
A ``Retry-After`` header sent with a 429 takes precedence over the computed
backoff.
"""

from collections.abc import Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from kube_migration.client.exceptions import NetworkError, RateLimitError, ServerError
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)

RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (NetworkError, ServerError, RateLimitError)


def wait_retry_after_or_backoff(min_wait: float, max_wait: float) -> Callable[[RetryCallState], float]:
    """Build a wait strategy honouring ``Retry-After`` on throttled responses.

    Args:
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds

    Returns:
        Callable usable as tenacity ``wait=`` argument
    """
    backoff = wait_random_exponential(multiplier=min_wait or 0.1, min=min_wait, max=max_wait)

    def _wait(retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            exc = outcome.exception()
            if isinstance(exc, RateLimitError) and exc.retry_after:
                return float(min(exc.retry_after, max_wait))
        return backoff(retry_state)

    return _wait


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.info(
        "retry_attempt",
        function=getattr(retry_state.fn, "__name__", "call"),
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
        next_wait=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
    )


def api_retrying(
    max_attempts: int = 5,
    min_wait: float = 0.5,
    max_wait: float = 30.0,
    retry_on: tuple[type[Exception], ...] = RETRYABLE_EXCEPTIONS,
) -> AsyncRetrying:
    """Create the bounded retry controller shared by all API calls.

    Args:
        max_attempts: Maximum number of attempts (including the first)
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        retry_on: Exception types that trigger a retry

    Returns:
        Configured ``AsyncRetrying`` instance
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_retry_after_or_backoff(min_wait, max_wait),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
        reraise=True,
    )

