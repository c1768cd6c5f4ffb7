"""
IMAP Session Management

One authenticated IMAP connection plus the recovery rules around it:

- Connections are opened lazily and re-opened (and the current mailbox
  re-selected) after the session was reset.
- UID FETCH commands run on a helper thread with an explicit deadline. When the
  deadline passes, the caller keeps whatever FETCH responses already arrived and
  waits a bounded drain period for the tagged completion. If it never comes,
  the socket is shut down and the session is reset, so a half-read response is
  never left on the wire for the next command.
- Lost connections and expired-token errors reset the session; the next command
  reconnects and logs in again, refreshing the OAuth2 token first if needed.

Each session belongs to one thread. SessionPool hands every worker thread its
own session.
"""

from __future__ import annotations

import concurrent.futures
import imaplib
import logging
import ssl
import threading
from dataclasses import dataclass, field

import imap_common
import imap_oauth2
import imap_retry
from imap_errors import ProtocolError, ScanError

logger = logging.getLogger(__name__)

# Outer bound on a single blocking socket read
SOCKET_TIMEOUT = 300.0
# How long a timed-out command may take to finish before the socket is dropped
DRAIN_TIMEOUT = 5.0
# SELECT attempts when restoring the mailbox on a fresh connection
RESELECT_ATTEMPTS = 3
RESELECT_DELAY = 0.5


def quote_mailbox(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass
class MailboxStatus:
    name: str
    message_count: int
    uid_next: int | None


@dataclass
class FetchResponse:
    status: str
    data: list = field(default_factory=list)
    timed_out: bool = False


def _shutdown_quietly(conn) -> None:
    try:
        conn.shutdown()
    except (OSError, imaplib.IMAP4.error):
        # Socket already closed
        pass


class MailSession:
    """
    A single IMAP session with lazy (re)connect and deadline-bounded fetches.

    Args:
        host, port: IMAP server
        credentials: Object with login(conn) and email (see imap_oauth2)
        use_ssl: Use IMAP4_SSL (default) or plain IMAP4
        tls_skip_verify: Disable certificate and hostname verification
        socket_timeout: Timeout applied to every socket read
        drain_timeout: Bounded wait for a timed-out command to complete
    """

    def __init__(
        self,
        host,
        port,
        credentials,
        use_ssl=True,
        tls_skip_verify=False,
        socket_timeout=SOCKET_TIMEOUT,
        drain_timeout=DRAIN_TIMEOUT,
    ):
        self.host = host
        self.port = port
        self.credentials = credentials
        self.use_ssl = use_ssl
        self.tls_skip_verify = tls_skip_verify
        self.socket_timeout = socket_timeout
        self.drain_timeout = drain_timeout
        self.connect_count = 0
        self._conn = None
        self._selected = None
        self._executor = None

    @classmethod
    def from_config(cls, config, credentials, **kwargs):
        return cls(
            config.imap_server,
            config.imap_port,
            credentials,
            use_ssl=config.use_ssl,
            tls_skip_verify=config.tls_skip_verify,
            **kwargs,
        )

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def selected(self) -> str | None:
        return self._selected

    def _open(self):
        if self.use_ssl:
            context = ssl.create_default_context()
            if self.tls_skip_verify:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            return imaplib.IMAP4_SSL(self.host, self.port, ssl_context=context, timeout=self.socket_timeout)
        return imaplib.IMAP4(self.host, self.port, timeout=self.socket_timeout)

    def connect(self):
        """
        Open and authenticate the connection if it is not open yet.

        Raises:
            ProtocolError: Connect or login failed.
            AuthError: The OAuth2 token could not be refreshed.
        """
        if self._conn is not None:
            return self._conn

        try:
            conn = self._open()
        except (OSError, imaplib.IMAP4.error) as e:
            raise ProtocolError(f"IMAP connect failed to {self.host}:{self.port}: {e}") from e

        try:
            self.credentials.login(conn)
        except (OSError, imaplib.IMAP4.error) as e:
            _shutdown_quietly(conn)
            raise ProtocolError(f"IMAP login failed for {self.credentials.email}: {e}") from e
        except Exception:
            _shutdown_quietly(conn)
            raise

        self._conn = conn
        self.connect_count += 1
        logger.debug("Connected to %s:%s (connection #%d)", self.host, self.port, self.connect_count)
        return conn

    def _connection(self):
        if self._conn is None:
            conn = self.connect()
            if self._selected is not None:
                self._reselect(conn, self._selected)
        return self._conn

    def _reselect(self, conn, mailbox) -> None:
        logger.info("Reconnected, re-selecting %s", mailbox)
        try:
            imap_retry.retry_linear(
                lambda: self._examine(conn, mailbox),
                attempts=RESELECT_ATTEMPTS,
                base_delay=RESELECT_DELAY,
                retry_on=(ScanError,),
                description=f"Re-select {mailbox}",
            )
        except (ScanError, OSError, imaplib.IMAP4.error) as e:
            # _selected is kept, so the next command reconnects and tries again
            self.reset()
            raise ProtocolError(f"Re-select of {mailbox} after reconnect failed: {e}") from e

    def reset(self) -> None:
        """Drop the connection; the next command reconnects."""
        conn, self._conn = self._conn, None
        if conn is not None:
            _shutdown_quietly(conn)
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def close(self) -> None:
        """Log out (best effort) and release the helper thread."""
        conn, self._conn = self._conn, None
        self._selected = None
        if conn is not None:
            try:
                conn.logout()
            except (OSError, imaplib.IMAP4.error):
                _shutdown_quietly(conn)
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _failure(self, error, describe) -> ProtocolError:
        """Map an imaplib/socket error to ProtocolError, resetting the session when it is unusable."""
        if isinstance(error, imaplib.IMAP4.abort) or isinstance(error, OSError):
            self.reset()
            return ProtocolError(f"{describe}: connection lost: {error}")
        if imap_oauth2.is_auth_error(error):
            self.reset()
        return ProtocolError(f"{describe}: {error}")

    def _guard(self, action, describe):
        conn = self._connection()
        try:
            return action(conn)
        except (OSError, imaplib.IMAP4.error) as e:
            raise self._failure(e, describe) from e

    def list_mailboxes(self):
        """Issue LIST "" "*" and return the raw (status, entries) pair."""
        return self._guard(lambda conn: conn.list('""', "*"), "LIST")

    def _examine(self, conn, mailbox) -> MailboxStatus:
        quoted = quote_mailbox(mailbox)
        typ, data = conn.select(quoted, readonly=True)
        if typ != "OK":
            raise ScanError(f"SELECT {mailbox} failed: {typ} {data}")

        try:
            message_count = int(data[0]) if data and data[0] is not None else 0
        except ValueError:
            message_count = 0

        _, uidnext_data = conn.response("UIDNEXT")
        uid_next = imap_common.parse_uidnext(uidnext_data)
        if uid_next is None:
            typ, status_data = conn.status(quoted, "(UIDNEXT)")
            if typ == "OK":
                uid_next = imap_common.parse_uidnext(status_data)

        return MailboxStatus(mailbox, message_count, uid_next)

    def select(self, mailbox) -> MailboxStatus:
        """
        Select a mailbox read-only (EXAMINE).

        Raises:
            ScanError: The server refused the mailbox or the connection failed.
        """
        self._selected = None
        try:
            status = self._guard(lambda conn: self._examine(conn, mailbox), f"SELECT {mailbox}")
        except ProtocolError as e:
            raise ScanError(str(e)) from e
        self._selected = mailbox
        return status

    def _helper(self):
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="imap-io")
        return self._executor

    @staticmethod
    def _uid_fetch_op(conn, message_set, items):
        conn.untagged_responses.pop("FETCH", None)
        return conn.uid("FETCH", message_set, items)

    def uid_fetch(self, message_set, items, timeout) -> FetchResponse:
        """
        Run UID FETCH with a deadline.

        Args:
            message_set: UID set, e.g. "1:1000" or "42"
            items: Fetch items, e.g. "(UID)" or "(BODY.PEEK[])"
            timeout: Seconds before the command is abandoned

        Returns:
            FetchResponse. On timeout, status is "TIMEOUT", timed_out is True,
            and data holds the FETCH responses received before the deadline.

        Raises:
            ProtocolError: The command failed or the connection was lost.
        """
        describe = f"UID FETCH {message_set}"
        conn = self._connection()
        future = self._helper().submit(self._uid_fetch_op, conn, message_set, items)
        try:
            typ, data = future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            partial = list(conn.untagged_responses.get("FETCH") or [])
            self._drain(future, describe)
            return FetchResponse("TIMEOUT", partial, timed_out=True)
        except (OSError, imaplib.IMAP4.error) as e:
            raise self._failure(e, describe) from e
        return FetchResponse(typ, [item for item in data or [] if item is not None])

    def _drain(self, future, describe) -> None:
        try:
            future.result(timeout=self.drain_timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("%s still running %.1fs after its deadline, resetting connection", describe, self.drain_timeout)
            self.reset()
        except (OSError, imaplib.IMAP4.error) as e:
            logger.warning("%s failed after its deadline (%s), resetting connection", describe, e)
            self.reset()
        else:
            logger.debug("%s drained after its deadline", describe)


class SessionPool:
    """
    Thread-local sessions for concurrent mailbox workers.

    The first thread to ask reuses the primary session (the one that listed
    the mailboxes), so a sequential run authenticates exactly once. Further
    threads get their own independently authenticated session.
    """

    def __init__(self, factory, primary=None):
        self._factory = factory
        self._spare = [primary] if primary is not None else []
        self._sessions = list(self._spare)
        self._lock = threading.Lock()
        self._local = threading.local()

    def get(self) -> MailSession:
        session = getattr(self._local, "session", None)
        if session is not None:
            return session

        with self._lock:
            session = self._spare.pop() if self._spare else None
            if session is None:
                session = self._factory()
                self._sessions.append(session)
        self._local.session = session
        return session

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions)
            self._sessions.clear()
            self._spare.clear()
        for session in sessions:
            session.close()
