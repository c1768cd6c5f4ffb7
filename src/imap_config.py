"""
IMAP Archive Configuration

Settings for a backup run, read from environment variables (the same names the
container images use) and overridable from the command line.

Environment Variables:
    GMAIL_EMAIL: Account address (always required).
    GMAIL_PASSWORD: App password (password auth).
    GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET: OAuth2 client (OAuth2 auth).
    OAUTH2_TOKEN_FILE: Token file (default: ~/.config/archive_gmail/token.json).
    BACKUP_DIR: Local backup root (default: ./backups).
    IMAP_SERVER, IMAP_PORT: Server (default: imap.gmail.com:993).
    IMAP_SSL: Set to "false" for a plain connection (default: "true").
    FOLDERS_ONLY: Comma-separated mailbox allow-list (default: all mailboxes).
    MAX_WORKERS: Concurrent mailbox workers (default: 1).
    SCAN_CHUNK_SIZE: UIDs per scan request, 0 scans in one request (default: 1000).
    DRY_RUN: Set to "true" to scan and fetch without writing files.
    TLS_SKIP_VERIFY: Set to "true" to skip certificate verification.
    LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO).
    CRON_SCHEDULE: 5-field cron expression; empty runs once.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from imap_errors import ConfigInvalid

DEFAULT_BACKUP_DIR = "./backups"
DEFAULT_IMAP_SERVER = "imap.gmail.com"
DEFAULT_IMAP_PORT = 993
DEFAULT_MAX_WORKERS = 1
DEFAULT_SCAN_CHUNK_SIZE = 1000
DEFAULT_LOG_LEVEL = "INFO"


def default_token_file() -> str:
    return os.path.join(os.path.expanduser("~"), ".config", "archive_gmail", "token.json")


def env_str(env, key: str, default: str = "") -> str:
    value = env.get(key)
    return value if value else default


def env_bool(env, key: str, default: bool = False) -> bool:
    value = env.get(key)
    if not value:
        return default
    return value.strip().lower() == "true"


def env_int(env, key: str, default: int) -> int:
    """Parse an integer variable; malformed values fall back to the default."""
    value = env.get(key)
    if not value:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def parse_folder_list(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(name.strip() for name in value.split(",") if name.strip())


@dataclass
class BackupConfig:
    email: str = ""
    password: str = ""
    client_id: str = ""
    client_secret: str = ""
    token_file: str = field(default_factory=default_token_file)
    backup_dir: str = DEFAULT_BACKUP_DIR
    imap_server: str = DEFAULT_IMAP_SERVER
    imap_port: int = DEFAULT_IMAP_PORT
    use_ssl: bool = True
    folders_only: frozenset[str] = frozenset()
    max_workers: int = DEFAULT_MAX_WORKERS
    scan_chunk_size: int = DEFAULT_SCAN_CHUNK_SIZE
    dry_run: bool = False
    tls_skip_verify: bool = False
    log_level: str = DEFAULT_LOG_LEVEL
    cron_schedule: str = ""

    @property
    def uses_oauth2(self) -> bool:
        """OAuth2 wins whenever both client id and secret are present."""
        return bool(self.client_id and self.client_secret)

    def validate(self) -> None:
        """Raise ConfigInvalid unless exactly one usable credential variant is configured."""
        if not self.email:
            raise ConfigInvalid("GMAIL_EMAIL is required")
        if not self.uses_oauth2 and not self.password:
            raise ConfigInvalid("Either GMAIL_PASSWORD OR (GMAIL_CLIENT_ID + GMAIL_CLIENT_SECRET) required")
        if self.uses_oauth2 and not self.token_file:
            raise ConfigInvalid("OAUTH2_TOKEN_FILE is not set")
        if self.max_workers < 1:
            raise ConfigInvalid(f"MAX_WORKERS must be >= 1, got {self.max_workers}")
        if self.scan_chunk_size < 0:
            raise ConfigInvalid(f"SCAN_CHUNK_SIZE must be >= 0, got {self.scan_chunk_size}")
        if not self.backup_dir:
            raise ConfigInvalid("BACKUP_DIR must not be empty")


def load_config(env=None) -> BackupConfig:
    """Build a BackupConfig from environment variables (os.environ by default)."""
    if env is None:
        env = os.environ

    return BackupConfig(
        email=env_str(env, "GMAIL_EMAIL"),
        password=env_str(env, "GMAIL_PASSWORD"),
        client_id=env_str(env, "GMAIL_CLIENT_ID"),
        client_secret=env_str(env, "GMAIL_CLIENT_SECRET"),
        token_file=env_str(env, "OAUTH2_TOKEN_FILE", default_token_file()),
        backup_dir=env_str(env, "BACKUP_DIR", DEFAULT_BACKUP_DIR),
        imap_server=env_str(env, "IMAP_SERVER", DEFAULT_IMAP_SERVER),
        imap_port=env_int(env, "IMAP_PORT", DEFAULT_IMAP_PORT),
        use_ssl=env_bool(env, "IMAP_SSL", True),
        folders_only=parse_folder_list(env.get("FOLDERS_ONLY")),
        max_workers=env_int(env, "MAX_WORKERS", DEFAULT_MAX_WORKERS),
        scan_chunk_size=env_int(env, "SCAN_CHUNK_SIZE", DEFAULT_SCAN_CHUNK_SIZE),
        dry_run=env_bool(env, "DRY_RUN", False),
        tls_skip_verify=env_bool(env, "TLS_SKIP_VERIFY", False),
        log_level=env_str(env, "LOG_LEVEL", DEFAULT_LOG_LEVEL),
        cron_schedule=env_str(env, "CRON_SCHEDULE"),
    )
