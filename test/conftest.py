"""
Shared pytest fixtures and utilities for the IMAP archiver tests.
"""

import os
import sys
from contextlib import contextmanager

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from imap_config import BackupConfig
from mock_imap_server import make_message, start_server_thread
from mock_oauth_server import start_server_thread as start_oauth_server_thread


def make_folder(uids, prefix="Message"):
    """Build a mock folder whose messages carry the given UIDs."""
    return [
        make_message(uid, f"Subject: {prefix} {uid}\r\nMessage-ID: <{uid}@mock>\r\n\r\nBody {uid}\r\n".encode())
        for uid in uids
    ]


@pytest.fixture
def single_mock_server():
    """
    Factory for in-process mock IMAP servers. Returns (server, port);
    servers are shut down after the test.
    """
    servers = []

    def _create(initial_data=None):
        thread, server = start_server_thread(0, initial_data)
        servers.append((thread, server))
        return server, server.port

    yield _create

    for thread, server in servers:
        server.shutdown()
        server.server_close()
        thread.join(timeout=2)


@pytest.fixture
def backup_config(tmp_path):
    """Factory for a password-auth BackupConfig pointing at a mock server."""

    def _create(port, **overrides):
        values = {
            "email": "user@example.com",
            "password": "app-password",
            "token_file": str(tmp_path / "token.json"),
            "backup_dir": str(tmp_path / "backups"),
            "imap_server": "localhost",
            "imap_port": port,
            "use_ssl": False,
        }
        values.update(overrides)
        return BackupConfig(**values)

    return _create


@pytest.fixture
def mock_oauth_server(monkeypatch):
    """Starts a mock OAuth2 token endpoint and points the Google token URL at it."""
    thread, server = start_oauth_server_thread(0)
    monkeypatch.setenv("OAUTH2_GOOGLE_TOKEN_URL", server.token_url)
    # The mock endpoint is plain HTTP
    monkeypatch.setenv("OAUTHLIB_INSECURE_TRANSPORT", "1")

    yield server

    server.shutdown()
    server.server_close()
    thread.join(timeout=2)


class FakeAuthorizer:
    """Interactive authorizer stand-in that records the URL and returns a canned code."""

    def __init__(self, code="mock-auth-code"):
        self.code = code
        self.urls = []

    def present_url(self, url):
        self.urls.append(url)

    def read_code(self):
        return self.code


@pytest.fixture
def fake_authorizer():
    return FakeAuthorizer()


@contextmanager
def temp_env(env):
    original = os.environ.copy()
    os.environ.clear()
    os.environ.update(env)
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(original)


__all__ = [
    "single_mock_server",
    "backup_config",
    "mock_oauth_server",
    "fake_authorizer",
    "FakeAuthorizer",
    "make_folder",
    "temp_env",
]
