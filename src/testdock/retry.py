"""Bounded retries with a constant interval."""
import logging
import time
from typing import Callable, Optional, TypeVar

from .errors import RetryExhaustedError

T = TypeVar("T")

DEFAULT_INTERVAL = 3.0
DEFAULT_TIMEOUT = 30.0

logger = logging.getLogger(__name__)


def retry_connect(
    operation: Callable[[], T],
    *,
    interval: float = DEFAULT_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT,
    description: str = "",
    log: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call ``operation`` until it succeeds or ``timeout`` seconds have elapsed.

    The pause between attempts is always ``interval``.

    Args:
        operation: Zero-argument callable. Any exception counts as a failure.
        interval: Seconds to sleep between attempts.
        timeout: Ceiling on the total elapsed time, in seconds.
        description: Label used in log records, e.g. a masked DSN.
        log: Logger to report failed attempts to.
        sleep: Sleep function, replaceable in tests.
        clock: Monotonic clock, replaceable in tests.

    Returns:
        Whatever ``operation`` returns on its first successful call.

    Raises:
        RetryExhaustedError: When the deadline passes. The last failure is
            chained as ``__cause__``.

    """
    log = log or logger
    started = clock()
    attempt = 0

    while True:
        attempt += 1
        try:
            return operation()
        except Exception as e:
            elapsed = clock() - started
            log.warning(
                "Attempt failed.",
                extra={"target": description, "attempt": attempt, "error": str(e)},
            )
            if elapsed + interval > timeout:
                raise RetryExhaustedError(
                    f"reached retry deadline after {attempt} attempts: {e}",
                    attempts=attempt,
                    last_error=e,
                ) from e
        sleep(interval)
