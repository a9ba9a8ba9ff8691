"""
Bounded retry combinator shared by health polling and every other wait loop.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

logger = logging.getLogger(__name__)


@dataclass
class RetryOutcome:
    """Result of a bounded retry loop."""

    success: bool
    attempts: int
    value: Any = None
    last_error: Optional[str] = None
    elapsed: float = 0.0


def retry(
    predicate: Callable[[], Any],
    attempts: int,
    backoff: float,
    max_wait: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "",
) -> RetryOutcome:
    """
    Calls ``predicate`` until it returns a truthy value.

    Exceptions raised by the predicate count as failed attempts. The loop stops
    after ``attempts`` calls or once ``max_wait`` seconds have elapsed,
    whichever comes first. Never raises.

    :param predicate: Zero-argument callable; truthy return means success.
    :param attempts: Maximum number of calls.
    :param backoff: Fixed sleep between calls, in seconds.
    :param max_wait: Optional overall time budget.
    :param sleep: Sleep function, injectable for tests.
    :param label: Name used in debug logging.
    :return: RetryOutcome with the last value or error.
    """
    stop = stop_after_attempt(max(1, attempts))
    if max_wait is not None:
        stop = stop | stop_after_delay(max_wait)

    def _log_attempt(state) -> None:
        if state.outcome.failed:
            detail = repr(state.outcome.exception())
        else:
            detail = repr(state.outcome.result())
        logger.debug("%s attempt %d failed: %s", label or "retry", state.attempt_number, detail)

    retrying = Retrying(
        stop=stop,
        wait=wait_fixed(backoff),
        retry=retry_if_exception_type(Exception) | retry_if_result(lambda value: not value),
        sleep=sleep,
        after=_log_attempt,
        reraise=False,
    )

    calls = [0]

    def _attempt():
        calls[0] += 1
        return predicate()

    started = time.monotonic()
    try:
        value = retrying(_attempt)
    except RetryError as err:
        last = err.last_attempt
        if last.failed:
            last_error = str(last.exception()) or type(last.exception()).__name__
            value = None
        else:
            last_error = None
            value = last.result()
        return RetryOutcome(
            success=False,
            attempts=calls[0],
            value=value,
            last_error=last_error,
            elapsed=time.monotonic() - started,
        )

    return RetryOutcome(
        success=True,
        attempts=calls[0],
        value=value,
        elapsed=time.monotonic() - started,
    )
