"""
Tests for imap_backup.py

Tests cover:
- Full runs against the mock server (password auth)
- Idempotence: a second run downloads nothing
- Allow-list filtering and \\Noselect mailboxes
- Dry run
- Concurrency bound and one login per worker thread
- SELECT retry spacing and skipped mailboxes
- Worker failure isolation; AuthError is not swallowed and stops dispatch
- A refused re-select after a timed-out fetch only costs that message
- Run-fatal errors on the primary session
"""

import os
import sys
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import imap_backup
import imap_session
from conftest import make_folder
from imap_errors import AuthError, ConfigInvalid, ProtocolError, RefreshFailed
from imap_oauth2 import PasswordCredentials
from imap_session import MailSession
from imap_store import MessageStore


def archived(backup_dir, mailbox_dir):
    path = os.path.join(backup_dir, mailbox_dir)
    if not os.path.isdir(path):
        return []
    return sorted(int(name[:-4]) for name in os.listdir(path) if name.endswith(".eml"))


@pytest.fixture
def fast_fetch(monkeypatch):
    """Drop the per-message pacing delay to keep runs quick."""
    original = imap_backup.imap_fetch.fetch_and_store

    def _fetch(*args, **kwargs):
        kwargs.setdefault("pace", 0)
        return original(*args, **kwargs)

    monkeypatch.setattr(imap_backup.imap_fetch, "fetch_and_store", _fetch)


class TestRunBackup:
    def test_archives_all_mailboxes(self, single_mock_server, backup_config, fast_fetch):
        server, port = single_mock_server(
            {"INBOX": make_folder([1, 2, 3]), "[Gmail]/Sent Mail": make_folder([4, 9])}
        )
        server.noselect = ["[Gmail]"]
        config = backup_config(port)

        summary = imap_backup.run_backup(config)

        assert summary.downloaded == 5
        assert archived(config.backup_dir, "INBOX") == [1, 2, 3]
        assert archived(config.backup_dir, "[Gmail]_Sent Mail") == [4, 9]
        assert sorted(r.mailbox for r in summary.mailboxes) == ["INBOX", "[Gmail]/Sent Mail"]
        assert all("\\Seen" not in m["flags"] for m in server.folders["INBOX"])

    def test_second_run_is_idempotent(self, single_mock_server, backup_config, fast_fetch):
        server, port = single_mock_server({"INBOX": make_folder([1, 2, 3])})
        config = backup_config(port)

        first = imap_backup.run_backup(config)
        fetched = len(server.body_fetches)
        second = imap_backup.run_backup(config)

        assert first.downloaded == 3
        assert second.downloaded == 0
        assert len(server.body_fetches) == fetched
        assert second.mailboxes[0].scanned == 3
        assert second.mailboxes[0].missing == 0

    def test_only_new_messages_downloaded(self, single_mock_server, backup_config, fast_fetch):
        server, port = single_mock_server({"INBOX": make_folder([1, 3, 7])})
        config = backup_config(port)
        MessageStore(config.backup_dir).write("INBOX", 1, b"already here")

        summary = imap_backup.run_backup(config)

        assert summary.downloaded == 2
        assert server.body_fetches == [("INBOX", 3), ("INBOX", 7)]

    def test_allow_list(self, single_mock_server, backup_config, fast_fetch):
        server, port = single_mock_server(
            {"INBOX": make_folder([1]), "Work": make_folder([1, 2]), "Spam": make_folder([1])}
        )
        config = backup_config(port, folders_only=frozenset({"Work", "Missing"}))

        summary = imap_backup.run_backup(config)

        assert [r.mailbox for r in summary.mailboxes] == ["Work"]
        # Filtered-out mailboxes are never selected
        assert [name for name, _ in server.select_times] == ["Work"]
        assert archived(config.backup_dir, "Work") == [1, 2]
        assert not os.path.exists(os.path.join(config.backup_dir, "INBOX"))

    def test_dry_run(self, single_mock_server, backup_config, fast_fetch):
        server, port = single_mock_server({"INBOX": make_folder([1, 2])})
        config = backup_config(port, dry_run=True)

        summary = imap_backup.run_backup(config)

        assert summary.downloaded == 0
        assert len(server.body_fetches) == 2
        assert not os.path.exists(config.backup_dir)

    def test_single_worker_logs_in_once(self, single_mock_server, backup_config, fast_fetch):
        server, port = single_mock_server({"A": make_folder([1]), "B": make_folder([1]), "C": make_folder([1])})

        imap_backup.run_backup(backup_config(port, max_workers=1))

        assert server.logins == 1

    def test_concurrency_bound(self, single_mock_server, backup_config, fast_fetch):
        folders = {f"Box{i}": make_folder([1]) for i in range(6)}
        server, port = single_mock_server(folders)
        config = backup_config(port, max_workers=2)
        active = 0
        peak = 0
        lock = threading.Lock()
        original = imap_backup.process_mailbox

        def tracking(*args, **kwargs):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            try:
                time.sleep(0.05)
                return original(*args, **kwargs)
            finally:
                with lock:
                    active -= 1

        with patch.object(imap_backup, "process_mailbox", side_effect=tracking):
            summary = imap_backup.run_backup(config)

        assert peak <= 2
        assert len(summary.mailboxes) == 6
        assert summary.downloaded == 6
        # One session per worker thread, never more than the pool size
        assert server.logins <= 2

    def test_skipped_mailbox_does_not_fail_run(self, single_mock_server, backup_config, fast_fetch):
        server, port = single_mock_server({"INBOX": make_folder([1]), "Broken": make_folder([1])})
        server.select_failures["Broken"] = 3
        config = backup_config(port)

        with patch.object(imap_backup.imap_scan, "SELECT_BASE_DELAY", 0):
            summary = imap_backup.run_backup(config)

        assert summary.downloaded == 1
        assert summary.failed_mailboxes == ["Broken"]

    def test_worker_exception_isolated(self, single_mock_server, backup_config, fast_fetch):
        _, port = single_mock_server({"INBOX": make_folder([1]), "Other": make_folder([1])})
        original = imap_backup.process_mailbox

        def flaky(session, mailbox, config, store=None, **kwargs):
            if mailbox == "Other":
                raise RuntimeError("unexpected")
            return original(session, mailbox, config, store, **kwargs)

        with patch.object(imap_backup, "process_mailbox", side_effect=flaky):
            summary = imap_backup.run_backup(backup_config(port))

        by_name = {r.mailbox: r for r in summary.mailboxes}
        assert by_name["INBOX"].stored == 1
        assert by_name["Other"].stored == 0
        assert by_name["Other"].error == "unexpected"

    def test_auth_error_propagates(self, single_mock_server, backup_config):
        _, port = single_mock_server({"INBOX": make_folder([1])})

        with patch.object(imap_backup, "process_mailbox", side_effect=AuthError("refresh failed")):
            with pytest.raises(AuthError):
                imap_backup.run_backup(backup_config(port))

    def test_auth_error_stops_dispatch(self, single_mock_server, backup_config):
        folders = {f"Box{i}": make_folder([1]) for i in range(5)}
        _, port = single_mock_server(folders)
        attempted = []

        def refresh_fails(session, mailbox, *args, **kwargs):
            attempted.append(mailbox)
            raise RefreshFailed("token revoked")

        with patch.object(imap_backup, "process_mailbox", side_effect=refresh_fails):
            with pytest.raises(RefreshFailed):
                imap_backup.run_backup(backup_config(port, max_workers=1))

        assert len(attempted) == 1

    def test_auth_error_waits_for_busy_workers(self, single_mock_server, backup_config):
        _, port = single_mock_server({"Fails": make_folder([1]), "Busy": make_folder([1])})
        busy_started = threading.Event()
        observed = []

        def worker(session, mailbox, config, store=None, stop=None, **kwargs):
            if mailbox == "Fails":
                busy_started.wait(5)
                raise RefreshFailed("token revoked")
            session.connect()
            busy_started.set()
            time.sleep(0.3)
            observed.append((session.connected, stop.is_set()))
            return imap_backup.MailboxResult(mailbox)

        with patch.object(imap_backup, "process_mailbox", side_effect=worker):
            with pytest.raises(RefreshFailed):
                imap_backup.run_backup(backup_config(port, max_workers=2))

        # Sessions are only closed once the busy worker returned; it saw the stop signal
        assert observed == [(True, True)]

    def test_list_failure_is_fatal(self, single_mock_server, backup_config):
        server, port = single_mock_server({"INBOX": []})
        server.list_error = True

        with pytest.raises(ProtocolError):
            imap_backup.run_backup(backup_config(port))

    def test_login_failure_is_fatal(self, single_mock_server, backup_config):
        server, port = single_mock_server({"INBOX": []})
        server.valid_passwords = {"other"}

        with pytest.raises(ProtocolError, match="login failed"):
            imap_backup.run_backup(backup_config(port))

    def test_invalid_config(self, backup_config):
        with pytest.raises(ConfigInvalid):
            imap_backup.run_backup(backup_config(1, email=""))

    def test_summary_logged(self, single_mock_server, backup_config, fast_fetch, caplog):
        _, port = single_mock_server({"INBOX": make_folder([1, 2])})
        with caplog.at_level("INFO"):
            imap_backup.run_backup(backup_config(port))
        assert "Archive complete: 2 messages in" in caplog.text
        assert "msg/sec" in caplog.text


class TestProcessMailbox:
    def _session(self, server, port, backup_config):
        return MailSession.from_config(backup_config(port), PasswordCredentials("user", "pw"))

    def test_select_retry_spacing(self, single_mock_server, backup_config):
        server, port = single_mock_server({"INBOX": make_folder([1])})
        server.select_failures["INBOX"] = 2
        config = backup_config(port)
        session = self._session(server, port, backup_config)

        try:
            result = imap_backup.process_mailbox(session, "INBOX", config, select_delay=0.1)
        finally:
            session.close()

        times = [t for _, t in server.select_times]
        assert len(times) == 3
        assert times[1] - times[0] >= 0.1
        assert times[2] - times[1] >= 0.2
        assert result.stored == 1

    def test_progress_and_completion_logged(self, single_mock_server, backup_config, caplog):
        server, port = single_mock_server({"INBOX": make_folder(range(1, 23))})
        config = backup_config(port)
        session = self._session(server, port, backup_config)

        try:
            with caplog.at_level("INFO"):
                result = imap_backup.process_mailbox(session, "INBOX", config, sleep=lambda _: None)
        finally:
            session.close()

        assert result.stored == 22
        assert "[INBOX] Progress: 20/22" in caplog.text
        assert "[INBOX] COMPLETE: 22/22 saved" in caplog.text

    def test_failed_reselect_costs_one_message(self, single_mock_server, backup_config, monkeypatch):
        """A timed-out fetch followed by a refused re-select only loses that message."""
        monkeypatch.setattr(imap_session, "RESELECT_DELAY", 0)
        server, port = single_mock_server({"INBOX": make_folder([1, 2, 3])})
        server.body_delays[1] = 2.0
        config = backup_config(port)
        session = MailSession.from_config(config, PasswordCredentials("user", "pw"), drain_timeout=0.2)
        original_reset = session.reset

        def reset_then_refuse_select():
            server.select_failures["INBOX"] = 1
            session.reset = original_reset
            original_reset()

        session.reset = reset_then_refuse_select

        try:
            result = imap_backup.process_mailbox(session, "INBOX", config, sleep=lambda _: None, fetch_timeout=0.3)
        finally:
            session.close()

        assert result.error is None
        assert result.stored == 2
        assert result.skipped == 1
        assert archived(config.backup_dir, "INBOX") == [2, 3]

    def test_stop_event_halts_downloads(self, single_mock_server, backup_config):
        server, port = single_mock_server({"INBOX": make_folder([1, 2, 3])})
        config = backup_config(port)
        session = self._session(server, port, backup_config)
        stop = threading.Event()
        stop.set()

        try:
            result = imap_backup.process_mailbox(session, "INBOX", config, sleep=lambda _: None, stop=stop)
        finally:
            session.close()

        assert result.missing == 3
        assert result.stored == 0
        assert server.body_fetches == []

    def test_failed_message_does_not_stop_others(self, tmp_path, backup_config):
        session = MagicMock()
        config = backup_config(1)
        store = MessageStore(str(tmp_path))
        scan = imap_backup.imap_scan.ScanResult("INBOX", scanned=3, missing=[1, 2, 3])
        outcomes = [
            imap_backup.imap_fetch.FetchOutcome.STORED,
            imap_backup.imap_fetch.FetchOutcome.SKIPPED,
            imap_backup.imap_fetch.FetchOutcome.STORED,
        ]

        with patch.object(imap_backup.imap_scan, "scan_missing", return_value=scan), patch.object(
            imap_backup.imap_fetch, "fetch_and_store", side_effect=outcomes
        ) as fetch:
            result = imap_backup.process_mailbox(session, "INBOX", config, store)

        assert [c.args[2] for c in fetch.call_args_list] == [1, 2, 3]
        assert result.stored == 2
        assert result.skipped == 1
        assert result.missing == 3


class TestBackupSummary:
    def test_rate(self):
        assert imap_backup.BackupSummary(downloaded=10, elapsed_seconds=4.0).rate == 2.5

    def test_rate_zero_elapsed(self):
        assert imap_backup.BackupSummary(downloaded=10, elapsed_seconds=0).rate == 0.0


class TestSelectMailboxes:
    def test_empty_allow_list_keeps_all(self):
        assert imap_backup.select_mailboxes(["INBOX", "Sent"], frozenset()) == ["INBOX", "Sent"]

    def test_allow_list_filters(self, caplog):
        with caplog.at_level("WARNING"):
            selected = imap_backup.select_mailboxes(["INBOX", "Sent"], frozenset({"Sent", "Ghost"}))
        assert selected == ["Sent"]
        assert "Ghost" in caplog.text
