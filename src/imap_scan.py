"""
UID Scanner

Works out which messages of a mailbox are not archived yet, using only
UID FETCH (UID) responses: no message bodies are downloaded here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import imap_common
import imap_retry
from imap_errors import ProtocolError, ScanError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000
UNCHUNKED_TIMEOUT = 90.0
CHUNK_TIMEOUT = 30.0
SELECT_ATTEMPTS = 3
SELECT_BASE_DELAY = 1.0


@dataclass
class ScanResult:
    mailbox: str
    scanned: int = 0
    missing: list[int] = field(default_factory=list)
    timed_out: bool = False
    message_count: int = 0
    uid_next: int | None = None


def select_mailbox(session, mailbox, attempts=SELECT_ATTEMPTS, base_delay=SELECT_BASE_DELAY, sleep=None):
    """
    SELECT (read-only) with linear backoff.

    Raises:
        ScanError: All attempts failed.
    """
    return imap_retry.retry_linear(
        lambda: session.select(mailbox),
        attempts=attempts,
        base_delay=base_delay,
        retry_on=(ScanError,),
        description=f"SELECT {mailbox}",
        sleep=sleep,
    )


def uid_ranges(uid_next, chunk_size):
    """
    Split [1, uid_next - 1] into "lo:hi" request ranges.

    chunk_size 0 yields one range. Without a known uid_next the whole
    mailbox is requested as "1:*".
    """
    if uid_next is None:
        return [(1, None)]
    last = uid_next - 1
    if last < 1:
        return []
    if chunk_size <= 0:
        return [(1, last)]
    return [(lo, min(lo + chunk_size - 1, last)) for lo in range(1, last + 1, chunk_size)]


def _format_range(lo, hi):
    return f"{lo}:{hi}" if hi is not None else f"{lo}:*"


def scan_uids(session, status, store, chunk_size=DEFAULT_CHUNK_SIZE, timeout=None) -> ScanResult:
    """
    Scan an already selected mailbox and collect UIDs with no local file.

    Args:
        session: MailSession with status.name selected
        status: MailboxStatus returned by the select
        store: MessageStore used for presence checks
        chunk_size: UIDs per request, 0 for a single request
        timeout: Per-request deadline (defaults to 90s unchunked, 30s per chunk)

    Returns:
        ScanResult with the missing UIDs in ascending order. A request that times
        out keeps the UIDs received before the deadline; the scan then moves on to
        the next chunk (or ends, when unchunked).
    """
    mailbox = status.name
    result = ScanResult(mailbox, message_count=status.message_count, uid_next=status.uid_next)
    if status.message_count == 0:
        logger.info("[%s] Empty mailbox", mailbox)
        return result

    if timeout is None:
        timeout = UNCHUNKED_TIMEOUT if chunk_size <= 0 else CHUNK_TIMEOUT

    ranges = uid_ranges(status.uid_next, chunk_size)
    chunked = len(ranges) > 1
    seen = set()
    missing = set()

    for index, (lo, hi) in enumerate(ranges, start=1):
        message_set = _format_range(lo, hi)
        if chunked:
            percent = index * 100 // len(ranges)
            logger.info("[%s] Chunk %d/%d (UIDs %s-%s) %d%%", mailbox, index, len(ranges), lo, hi, percent)

        try:
            response = session.uid_fetch(message_set, "(UID)", timeout)
        except ProtocolError as e:
            logger.warning("[%s] UID FETCH %s failed: %s", mailbox, message_set, e)
            continue

        if response.status not in ("OK", "TIMEOUT"):
            logger.warning("[%s] UID FETCH %s returned %s", mailbox, message_set, response.status)
            continue

        uids = imap_common.parse_fetch_uids(response.data)
        checked = 0
        chunk_missing = 0
        for uid in uids:
            # Servers answer "n:*" with the last message even when n is past it
            if lo <= uid and (hi is None or uid <= hi) and uid not in seen:
                seen.add(uid)
                checked += 1
                if not store.exists(mailbox, uid):
                    missing.add(uid)
                    chunk_missing += 1
        if chunked:
            logger.info(
                "[%s] Chunk %d/%d: %d missing / %d checked", mailbox, index, len(ranges), chunk_missing, checked
            )

        if response.timed_out:
            result.timed_out = True
            logger.warning(
                "[%s] UID FETCH %s timed out after %.0fs, kept %d UIDs", mailbox, message_set, timeout, len(uids)
            )
            if not chunked:
                break

    result.scanned = len(seen)
    result.missing = sorted(missing)
    logger.info("[%s] Scanned %d UIDs, %d missing locally", mailbox, result.scanned, len(result.missing))
    return result


def scan_missing(
    session,
    mailbox,
    store,
    chunk_size=DEFAULT_CHUNK_SIZE,
    timeout=None,
    select_attempts=SELECT_ATTEMPTS,
    select_delay=SELECT_BASE_DELAY,
    sleep=None,
) -> ScanResult:
    """
    Select a mailbox read-only and return the UIDs not yet stored locally.

    Raises:
        ScanError: The mailbox could not be selected after all attempts.
    """
    status = select_mailbox(session, mailbox, attempts=select_attempts, base_delay=select_delay, sleep=sleep)
    logger.info("[%s] %d messages, UIDNEXT %s", mailbox, status.message_count, status.uid_next)
    return scan_uids(session, status, store, chunk_size=chunk_size, timeout=timeout)
