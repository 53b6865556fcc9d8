"""Retry-with-backoff wrapper for individual gateway calls."""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Optional, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from .config import DEFAULT_RETRY_CONFIG, RetryConfig
from .errors import (
    GatewayError,
    OperationCancelled,
    ThrottlingError,
    classify_client_error,
)
from .models import Result

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    operation: Callable[[], T],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    cancel: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
    name: Optional[str] = None,
) -> Result[T]:
    """
    Run *operation* until it succeeds, fails for good, or is cancelled.

    Only throttling-class failures are retried, at most
    ``config.max_retries`` times, waiting ``initial_delay * 2**attempt``
    seconds between attempts.  When *cancel* is given the wait is
    ``cancel.wait(delay)`` so a cancelled caller never sleeps out the
    backoff.  *name* only labels log lines and errors.

    Returns a Result holding the value, or the GatewayError /
    ThrottlingError / OperationCancelled that ended the attempts.
    Exceptions that are not AWS failures propagate unchanged.
    """
    label = name or getattr(operation, "__name__", "operation")
    attempts = config.max_retries + 1

    for attempt in range(attempts):
        if cancel is not None and cancel.is_set():
            return Result.failure(OperationCancelled(operation=label))
        try:
            return Result.success(operation())
        except (GatewayError, ClientError, BotoCoreError) as exc:
            error = classify_client_error(exc, operation=label)

        if not isinstance(error, ThrottlingError):
            logger.debug("%s failed (%s), not retrying", label, error.error_code)
            return Result.failure(error)

        if attempt == attempts - 1:
            logger.warning(
                "%s still throttled after %d attempts, giving up", label, attempts
            )
            return Result.failure(error)

        delay = config.delay_for(attempt)
        logger.debug(
            "%s throttled (%s), retry %d/%d in %.2fs",
            label,
            error.error_code,
            attempt + 1,
            config.max_retries,
            delay,
        )
        if _pause(delay, cancel, sleep):
            return Result.failure(OperationCancelled(operation=label))

    raise AssertionError("unreachable")  # pragma: no cover


def _pause(
    delay: float,
    cancel: Optional[threading.Event],
    sleep: Callable[[float], None],
) -> bool:
    """Wait *delay* seconds; return True if cancelled meanwhile."""
    if cancel is None:
        sleep(delay)
        return False
    return cancel.wait(delay)
