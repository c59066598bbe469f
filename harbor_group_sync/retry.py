"""
Retry utilities for handling transient Harbor API failures.

The transport uses these helpers to repeat idempotent requests (listing pages,
login probes) while Harbor is briefly unavailable. Mutating requests are never
retried.
"""

import time
import logging
from typing import Callable, Any, Iterator, Tuple, Type, Optional

logger = logging.getLogger(__name__)

# Rate limiting; 5xx responses are matched as a range
TRANSIENT_STATUS_CODES = frozenset([429])


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when every attempt of a retried call failed."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def backoff_delays(delay: float, backoff: float) -> Iterator[float]:
    """Yield ``delay``, ``delay * backoff``, ``delay * backoff ** 2``, ..."""
    while True:
        yield delay
        delay *= backoff


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None
) -> Any:
    """
    Call ``func`` until it succeeds or ``max_attempts`` calls have failed.

    Only exceptions listed in ``exceptions`` are retried, and of those only
    the ones ``should_retry`` accepts; anything else propagates at once.

    Returns:
        Result of the first successful call

    Raises:
        ValueError: If max_attempts is below 1
        MaxRetriesExceeded: If all attempts fail
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    kwargs = kwargs or {}
    waits = backoff_delays(delay, backoff)
    failure = None

    for attempt in range(1, max_attempts + 1):
        if failure is not None:
            _notify_retry(on_retry, attempt - 1, failure)
            time.sleep(next(waits))
        try:
            result = func(*args, **kwargs)
        except exceptions as e:
            if should_retry is not None and not should_retry(e):
                raise
            logger.debug(f"Attempt {attempt}/{max_attempts} failed with {type(e).__name__}: {e}")
            failure = e
            continue
        if attempt > 1:
            logger.info(f"Call succeeded on attempt {attempt}")
        return result

    raise MaxRetriesExceeded(max_attempts, failure)


def _notify_retry(on_retry, attempt: int, exception: Exception):
    if on_retry is None:
        return
    try:
        on_retry(attempt, exception)
    except Exception as e:
        logger.warning(f"Retry callback failed: {e}")


def is_retryable_error(exception: Exception) -> bool:
    """
    Tell whether a failed Harbor call is worth repeating.

    Connection level failures are retried. HTTP failures are retried only for
    rate limiting and server side errors; every other status is final.
    """
    if isinstance(exception, (ConnectionError, TimeoutError, RetryableError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if status_code is None:
        return False
    return status_code in TRANSIENT_STATUS_CODES or 500 <= status_code < 600


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """Return an ``on_retry`` callback that logs a warning naming ``operation_name``."""
    def log_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt} "
                       f"({type(exception).__name__}: {exception}), retrying")

    return log_retry
