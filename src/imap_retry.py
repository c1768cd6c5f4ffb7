"""
IMAP Retry Logic

Retry helper with linear backoff, used for mailbox SELECT: a failed attempt n
waits n * base_delay seconds before the next one (1s, 2s with the defaults).
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger(__name__)


def retry_linear(operation, attempts=3, base_delay=1.0, retry_on=(Exception,), description="operation", sleep=None):
    """
    Call operation() until it succeeds or attempts are exhausted.

    Args:
        operation: Zero-argument callable
        attempts: Total number of calls (>= 1)
        base_delay: Seconds to wait after the first failure; grows linearly
        retry_on: Exception types that trigger another attempt
        description: Label for log messages (e.g. "SELECT INBOX")
        sleep: Sleep function (defaults to time.sleep)

    Returns:
        The result of the first successful call.

    Raises:
        The last exception raised by operation once all attempts failed.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")
    if base_delay < 0:
        raise ValueError(f"base_delay must be >= 0, got {base_delay}")
    if sleep is None:
        sleep = time.sleep

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except retry_on as e:
            logger.warning("%s failed (attempt %d/%d): %s", description, attempt, attempts, e)
            if attempt == attempts:
                raise
            sleep(base_delay * attempt)
