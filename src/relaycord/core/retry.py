from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .exceptions import TransientError
from .logging_utils import log_event


def transient_retrying(
    *,
    max_retries: int = 3,
    base_wait: float = 1.0,
    max_wait: float = 30.0,
    jitter: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    logger: Optional[logging.Logger] = None,
    operation: str = "",
) -> AsyncRetrying:
    """
    Build an `AsyncRetrying` that retries `TransientError` with exponential backoff.

    Args:
        max_retries: Retries after the first attempt; 0 disables retrying.
        base_wait: Multiplier for the exponential wait, in seconds.
        max_wait: Ceiling for the exponential part of the wait.
        jitter: Upper bound of the uniform random delay added to each wait.
        sleep: Awaitable sleep used between attempts.
        logger: Receives one warning per scheduled retry.
        operation: Label included in the retry log line.

    The last error is re-raised once attempts are exhausted.
    """
    log = logger or logging.getLogger(__name__)

    def _before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        next_action: Any = retry_state.next_action
        log_event(
            log,
            logging.WARNING,
            "retry.scheduled",
            operation=operation,
            attempt=retry_state.attempt_number,
            max_retries=max_retries,
            delay_seconds=round(getattr(next_action, "sleep", 0.0), 3),
            exc=exc,
        )

    return AsyncRetrying(
        stop=stop_after_attempt(max(max_retries, 0) + 1),
        wait=wait_exponential(multiplier=base_wait, max=max_wait, exp_base=2)
        + wait_random(0, max(jitter, 0.0)),
        retry=retry_if_exception_type(TransientError),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
