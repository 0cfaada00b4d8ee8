"""
Shared retry loop used by the Elexon client (429 cooldown) and the slice
processor (fetch failures).
"""

import logging
from typing import Callable, Optional, TypeVar

from cancellation import CancelToken, ensure_token
from errors import RunCancelled

logger = logging.getLogger("curtailment.retry")

T = TypeVar("T")


def retry_call(
    fn: Callable[[], T],
    *,
    attempts: Optional[int],
    delay: float,
    retryable: Callable[[Exception], bool] = lambda exc: True,
    backoff: float = 1.0,
    max_delay: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
    label: str = "operation",
) -> T:
    """Call *fn* until it succeeds.

    attempts=None retries forever (only cancellation stops it). Exceptions for
    which *retryable* returns False, and the last failure once attempts run
    out, propagate unchanged. The wait starts at *delay* and is multiplied by
    *backoff* after every failure, capped at *max_delay*.
    """
    cancel = ensure_token(cancel)
    wait = delay
    attempt = 0
    while True:
        attempt += 1
        cancel.check()
        try:
            return fn()
        except RunCancelled:
            raise
        except Exception as exc:
            if not retryable(exc):
                raise
            if attempts is not None and attempt >= attempts:
                logger.warning("%s: giving up after %d attempts: %s", label, attempt, exc)
                raise
            if attempts is None:
                logger.warning("%s: attempt %d failed (%s), retrying in %.1fs",
                               label, attempt, exc, wait)
            else:
                logger.warning("%s: attempt %d/%d failed (%s), retrying in %.1fs",
                               label, attempt, attempts, exc, wait)
        cancel.sleep(wait)
        wait = wait * backoff
        if max_delay is not None:
            wait = min(wait, max_delay)
