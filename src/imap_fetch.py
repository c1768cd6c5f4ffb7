"""
Message Fetcher

Downloads one message by UID with BODY.PEEK[] (the \\Seen flag is never set)
and writes it to the local store.
"""

from __future__ import annotations

import enum
import logging
import time

import imap_common
from imap_errors import FetchError, ProtocolError

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 15.0
# Delay after every fetch attempt to stay under server rate limits
FETCH_PACE = 0.05


class FetchOutcome(enum.Enum):
    STORED = "stored"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


def _download(session, uid, timeout) -> bytes:
    try:
        response = session.uid_fetch(str(uid), "(BODY.PEEK[])", timeout)
    except ProtocolError as e:
        raise FetchError(uid, str(e)) from e

    if response.timed_out:
        raise FetchError(uid, f"timed out after {timeout:.0f}s")
    if response.status != "OK":
        raise FetchError(uid, f"server returned {response.status}")

    body = imap_common.extract_message_body(response.data)
    if not body:
        raise FetchError(uid, "empty response")
    return body


def fetch_and_store(
    session, mailbox, uid, store, dry_run=False, timeout=FETCH_TIMEOUT, pace=FETCH_PACE, sleep=None
) -> FetchOutcome:
    """
    Fetch a single message and write it to {mailbox_dir}/{uid}.eml.

    Failures (timeout, empty body, protocol error, write error) are logged at
    DEBUG and reported as SKIPPED; they never propagate to the caller.
    In dry-run mode the fetch still happens but nothing is written.
    """
    if sleep is None:
        sleep = time.sleep

    try:
        body = _download(session, uid, timeout)
        if dry_run:
            logger.debug("[%s] Dry run: would store UID %s (%d bytes)", mailbox, uid, len(body))
            return FetchOutcome.DRY_RUN
        try:
            written = store.write(mailbox, uid, body)
        except OSError as e:
            raise FetchError(uid, f"write failed: {e}") from e
        if not written:
            logger.debug("[%s] UID %s already stored", mailbox, uid)
            return FetchOutcome.SKIPPED
        return FetchOutcome.STORED
    except FetchError as e:
        logger.debug("[%s] Skipping UID %s: %s", mailbox, e.uid, e.reason)
        return FetchOutcome.SKIPPED
    finally:
        if pace > 0:
            sleep(pace)
