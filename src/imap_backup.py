"""
IMAP Mailbox Archiver

Incrementally mirrors every selectable mailbox of an IMAP account to local
.eml files (RFC 5322, one file per UID), skipping messages already on disk.

Per mailbox: SELECT (read-only, retried) -> UID scan -> download missing UIDs.
Mailboxes run on a bounded worker pool; each worker thread has its own
authenticated session and returns a MailboxResult that is folded into the run
summary at the end.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field

import imap_common
import imap_fetch
import imap_oauth2
import imap_scan
from imap_errors import AuthError, ScanError
from imap_session import MailSession, SessionPool
from imap_store import MessageStore

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 20


@dataclass
class MailboxResult:
    mailbox: str
    scanned: int = 0
    missing: int = 0
    stored: int = 0
    skipped: int = 0
    selected: bool = True
    error: str | None = None


@dataclass
class BackupSummary:
    downloaded: int = 0
    elapsed_seconds: float = 0.0
    mailboxes: list[MailboxResult] = field(default_factory=list)

    @property
    def rate(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.downloaded / self.elapsed_seconds

    @property
    def failed_mailboxes(self) -> list[str]:
        return [result.mailbox for result in self.mailboxes if result.error or not result.selected]


def process_mailbox(
    session, mailbox, config, store=None, select_delay=None, sleep=None, fetch_timeout=None, stop=None
):
    """
    Archive one mailbox: select, scan, then download the missing UIDs in order.

    A mailbox that cannot be selected is skipped. A failed message never stops
    the remaining downloads.

    Args:
        session: MailSession owned by the calling thread
        mailbox: Mailbox name
        config: BackupConfig
        store: MessageStore (built from config when omitted)
        select_delay: Base delay of the SELECT retry backoff (default 1s)
        sleep: Sleep function for backoff and pacing (tests)
        fetch_timeout: Per-message fetch deadline (default 15s)
        stop: threading.Event; once set, no further messages are fetched

    Returns:
        MailboxResult
    """
    if store is None:
        store = MessageStore(config.backup_dir, dry_run=config.dry_run)
    if select_delay is None:
        select_delay = imap_scan.SELECT_BASE_DELAY
    if fetch_timeout is None:
        fetch_timeout = imap_fetch.FETCH_TIMEOUT
    result = MailboxResult(mailbox)

    try:
        scan = imap_scan.scan_missing(
            session,
            mailbox,
            store,
            chunk_size=config.scan_chunk_size,
            select_delay=select_delay,
            sleep=sleep,
        )
    except ScanError as e:
        logger.error("[%s] Skipping mailbox: %s", mailbox, e)
        result.selected = False
        result.error = str(e)
        return result

    result.scanned = scan.scanned
    result.missing = len(scan.missing)
    if not scan.missing:
        logger.info("[%s] Up to date (%d messages)", mailbox, result.scanned)
        return result

    store.ensure_mailbox_dir(mailbox)
    total = len(scan.missing)
    logger.info("[%s] Downloading %d missing messages", mailbox, total)

    fetch_kwargs = {"timeout": fetch_timeout}
    if sleep is not None:
        fetch_kwargs["sleep"] = sleep
    for index, uid in enumerate(scan.missing, start=1):
        if stop is not None and stop.is_set():
            logger.warning("[%s] Run aborted, %d/%d messages not attempted", mailbox, total - index + 1, total)
            return result
        outcome = imap_fetch.fetch_and_store(session, mailbox, uid, store, dry_run=config.dry_run, **fetch_kwargs)
        if outcome is imap_fetch.FetchOutcome.STORED:
            result.stored += 1
        elif outcome is imap_fetch.FetchOutcome.SKIPPED:
            result.skipped += 1
        if index % PROGRESS_EVERY == 0 or index == total:
            logger.info("[%s] Progress: %d/%d (%d stored)", mailbox, index, total, result.stored)

    if config.dry_run:
        logger.info("[%s] COMPLETE (dry run): %d/%d would be saved", mailbox, total - result.skipped, total)
    else:
        logger.info("[%s] COMPLETE: %d/%d saved", mailbox, result.stored, total)
    return result


def _run_worker(pool, mailbox, config, store, fatal):
    """
    Worker entry point: a failure here only costs this mailbox.

    AuthError is fatal to the whole run. It sets the fatal event so queued
    workers return None without connecting and busy ones stop between messages.
    """
    if fatal.is_set():
        return None
    try:
        return process_mailbox(pool.get(), mailbox, config, store, stop=fatal)
    except AuthError:
        fatal.set()
        raise
    except Exception as e:
        logger.exception("[%s] Worker failed: %s", mailbox, e)
        return MailboxResult(mailbox, error=str(e))


def select_mailboxes(available, folders_only):
    """Apply the allow-list. An empty allow-list keeps every mailbox."""
    if not folders_only:
        return list(available)
    selected = [name for name in available if name in folders_only]
    for name in sorted(set(folders_only) - set(available)):
        logger.warning("Mailbox %s from FOLDERS_ONLY not found on server", name)
    return selected


def run_backup(config, authorizer=None, credentials=None, session_factory=None) -> BackupSummary:
    """
    Archive all selected mailboxes of the configured account.

    Args:
        config: BackupConfig
        authorizer: Interactive OAuth2 authorizer (console prompt by default)
        credentials: Pre-resolved credentials (skips resolution)
        session_factory: Callable returning a new MailSession (tests)

    Returns:
        BackupSummary

    Raises:
        ConfigInvalid: Invalid configuration.
        AuthError: Credentials could not be resolved or refreshed.
        ProtocolError: Connect, login, or LIST failed on the primary session.
    """
    config.validate()
    if credentials is None:
        credentials = imap_oauth2.build_credentials(config, authorizer=authorizer)
    if session_factory is None:

        def session_factory():
            return MailSession.from_config(config, credentials)

    store = MessageStore(config.backup_dir, dry_run=config.dry_run)
    summary = BackupSummary()
    started = time.monotonic()

    logger.info("--- Configuration Summary ---")
    logger.info("Server       : %s:%s", config.imap_server, config.imap_port)
    logger.info("Account      : %s", config.email)
    logger.info("Auth Method  : %s", credentials.description)
    logger.info("Backup Dir   : %s", store.backup_dir)
    logger.info("Workers      : %d", config.max_workers)
    if config.dry_run:
        logger.info("Mode         : Dry run (nothing is written)")

    primary = session_factory()
    pool = SessionPool(session_factory, primary=primary)
    try:
        primary.connect()
        mailboxes = select_mailboxes(imap_common.list_selectable_folders(primary), config.folders_only)
        logger.info("Found %d mailboxes to archive", len(mailboxes))

        slots = threading.BoundedSemaphore(config.max_workers)
        fatal = threading.Event()
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=config.max_workers)
        futures = []
        try:
            for mailbox in mailboxes:
                slots.acquire()
                if fatal.is_set():
                    slots.release()
                    break
                future = executor.submit(_run_worker, pool, mailbox, config, store, fatal)
                future.add_done_callback(lambda _: slots.release())
                futures.append(future)

            for future in concurrent.futures.as_completed(futures):
                result = future.result()
                if result is not None:
                    summary.mailboxes.append(result)
        except BaseException:
            fatal.set()
            # Workers still hold their sessions until they return
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        else:
            executor.shutdown(wait=True)
    finally:
        pool.close_all()

    summary.downloaded = sum(result.stored for result in summary.mailboxes)
    summary.elapsed_seconds = time.monotonic() - started
    logger.info(
        "Archive complete: %d messages in %.1fs (%.2f msg/sec)",
        summary.downloaded,
        summary.elapsed_seconds,
        summary.rate,
    )
    if summary.failed_mailboxes:
        logger.warning("Mailboxes with errors: %s", ", ".join(sorted(summary.failed_mailboxes)))
    return summary
