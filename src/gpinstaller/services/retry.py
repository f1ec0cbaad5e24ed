"""Generic retry/backoff combinator shared by command execution and connection setup."""

import time
from typing import Callable, Optional, TypeVar

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential, wait_none

from gpinstaller.models import CancellationToken

T = TypeVar("T")

MAX_BACKOFF_SECONDS = 60.0


def retry_call(
    operation: Callable[[], T],
    *,
    should_retry: Callable[[BaseException], bool],
    max_retries: int = 0,
    backoff: str = "exponential",
    backoff_seconds: float = 1.0,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    cancel_token: Optional[CancellationToken] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Runs ``operation`` at most ``max_retries + 1`` times.

    Only exceptions accepted by ``should_retry`` are retried; anything else, or
    the last failure once attempts are exhausted, propagates unchanged.
    Cancellation is observed between attempts.
    """
    if backoff == "exponential" and backoff_seconds > 0:
        wait = wait_exponential(multiplier=backoff_seconds, max=MAX_BACKOFF_SECONDS)
    else:
        wait = wait_none()

    def _retryable(exc: BaseException) -> bool:
        if cancel_token is not None and cancel_token.cancelled:
            return False
        return should_retry(exc)

    def _before_sleep(retry_state):
        if on_retry is not None and retry_state.outcome is not None:
            on_retry(retry_state.attempt_number, retry_state.outcome.exception())

    retrying = Retrying(
        stop=stop_after_attempt(max(0, max_retries) + 1),
        wait=wait,
        retry=retry_if_exception(_retryable),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
    return retrying(operation)
