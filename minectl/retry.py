"""
Bounded retry for individual backend calls.

Only ProviderTransientError is retried. Anything else, including
"not found", surfaces on the first attempt.
"""

import logging
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import ProviderTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_MAX_WAIT = 10.0


def call_with_retry(
    fn: Callable[[], T],
    attempts: int = DEFAULT_ATTEMPTS,
    max_wait: float = DEFAULT_MAX_WAIT,
    sleep: Callable[[float], None] = None,
) -> T:
    """
    Run fn, retrying transient backend errors with exponential backoff.

    Args:
        fn: Zero-argument callable performing exactly one backend call
        attempts: Total number of attempts (1 disables retrying)
        max_wait: Upper bound in seconds for a single backoff sleep
        sleep: Optional sleep function (tests pass a no-op)

    Returns:
        Whatever fn returns

    Raises:
        ProviderTransientError: If every attempt failed transiently
    """
    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep

    retrying = Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=1, min=1, max=max_wait),
        retry=retry_if_exception_type(ProviderTransientError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
        **kwargs,
    )
    return retrying(fn)
