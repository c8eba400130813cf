"""Bounded retry loop for flaky LLM calls."""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from paperforge.exceptions import RetryExhaustedException

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_call(
    func: Callable[[], T],
    *,
    max_attempts: int,
    delay_sec: float = 0.0,
    backoff: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """
    Call ``func`` until it succeeds or ``max_attempts`` is reached.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. The wait before attempt ``n + 1`` is
    ``delay_sec * backoff ** (n - 1)``.

    Args:
        func: Zero-argument callable to invoke
        max_attempts: Total number of attempts, including the first
        delay_sec: Wait before the first retry
        backoff: Multiplier applied to the wait after each failure
        retry_on: Exception types that trigger a retry
        label: Name used in log messages
        on_retry: Hook called with (attempt, error) before each wait

    Returns:
        Whatever ``func`` returns

    Raises:
        RetryExhaustedException: With one entry per failed attempt
    """
    attempt_errors: List[Dict[str, Any]] = []
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except retry_on as exc:
            last_error = exc
            attempt_errors.append(
                {
                    "attempt": attempt,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                }
            )
            if attempt == max_attempts:
                break

            wait_time = delay_sec * (backoff ** (attempt - 1))
            logger.warning(
                f"{label}: attempt {attempt}/{max_attempts} failed "
                f"({type(exc).__name__}: {exc}). Retrying in {wait_time:.1f}s"
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            if wait_time > 0:
                time.sleep(wait_time)

    logger.error(f"{label}: failed after {max_attempts} attempts: {last_error}")
    raise RetryExhaustedException(
        f"{label} failed after {max_attempts} attempts: {last_error}",
        attempt_errors=attempt_errors,
        last_error=last_error,
    ) from last_error
