"""Retry a callable with exponential backoff until it succeeds."""

import logging
import time
from typing import Callable, TypeVar

from tenacity import Retrying, RetryCallState, stop_after_attempt, wait_exponential, wait_random

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ATTEMPTS = 10
_DELAY = 0.1
_MAX_JITTER = 0.1


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def _log_failure(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome is not None else None
    logger.error("#%d: %s", state.attempt_number - 1, error)


def do(func: Callable[[], T]) -> T:
    """Call ``func`` until it stops raising, at most ten times with growing delays.

    Returns what ``func`` returns; if every attempt fails, the last exception is raised.
    """
    retrying = Retrying(
        stop=stop_after_attempt(_ATTEMPTS),
        wait=wait_exponential(multiplier=_DELAY) + wait_random(0, _MAX_JITTER),
        after=_log_failure,
        sleep=_sleep,
        reraise=True,
    )
    return retrying(func)