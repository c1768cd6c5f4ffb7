"""
Gmail IMAP Archiver

Incrementally backs up every mailbox of a Gmail (or any IMAP) account to local
.eml files. Messages already on disk are never downloaded again, so the
command can be re-run (or scheduled) safely.

Configuration (Environment Variables):
    GMAIL_EMAIL: Account address.
    GMAIL_PASSWORD: App password.

    OAuth2 (instead of a password):
    GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET: OAuth2 client.
    OAUTH2_TOKEN_FILE: Token file (default: ~/.config/archive_gmail/token.json).

    BACKUP_DIR, IMAP_SERVER, IMAP_PORT, IMAP_SSL, FOLDERS_ONLY, MAX_WORKERS,
    SCAN_CHUNK_SIZE, DRY_RUN, TLS_SKIP_VERIFY, LOG_LEVEL, CRON_SCHEDULE
    (see imap_config).

Usage:
    python3 archive_gmail.py \
        --email "you@gmail.com" \
        --password "your-app-password" \
        --backup-dir "./backups"

Scheduled (every night at 02:30):
    python3 archive_gmail.py --cron "30 2 * * *"
"""

import argparse
import logging
import sys
import threading

import imap_backup
import imap_config
import imap_logging
import imap_schedule
from imap_errors import ArchiveError, AuthError, ConfigInvalid

logger = logging.getLogger("archive_gmail")


def build_parser(config):
    """Command line flags; every default comes from the environment-derived config."""
    parser = argparse.ArgumentParser(description="Incrementally archive IMAP mailboxes to local .eml files.")

    parser.add_argument("--email", default=config.email, help="Account address (or GMAIL_EMAIL)")
    parser.add_argument("--password", default=config.password, help="App password (or GMAIL_PASSWORD)")
    parser.add_argument(
        "--client-id", dest="client_id", default=config.client_id, help="OAuth2 Client ID (or GMAIL_CLIENT_ID)"
    )
    parser.add_argument(
        "--client-secret",
        dest="client_secret",
        default=config.client_secret,
        help="OAuth2 Client Secret (or GMAIL_CLIENT_SECRET)",
    )
    parser.add_argument(
        "--token-file", dest="token_file", default=config.token_file, help="OAuth2 token file (or OAUTH2_TOKEN_FILE)"
    )

    parser.add_argument("--backup-dir", dest="backup_dir", default=config.backup_dir, help="Backup root (or BACKUP_DIR)")
    parser.add_argument("--server", dest="imap_server", default=config.imap_server, help="IMAP server (or IMAP_SERVER)")
    parser.add_argument("--port", dest="imap_port", type=int, default=config.imap_port, help="IMAP port (or IMAP_PORT)")
    parser.add_argument(
        "--no-ssl",
        dest="use_ssl",
        action="store_false",
        default=config.use_ssl,
        help="Plain IMAP instead of TLS (or IMAP_SSL=false)",
    )
    parser.add_argument(
        "--folders",
        default=",".join(sorted(config.folders_only)),
        help="Comma-separated mailbox allow-list (or FOLDERS_ONLY)",
    )
    parser.add_argument(
        "--workers", dest="max_workers", type=int, default=config.max_workers, help="Concurrent mailboxes (or MAX_WORKERS)"
    )
    parser.add_argument(
        "--chunk-size",
        dest="scan_chunk_size",
        type=int,
        default=config.scan_chunk_size,
        help="UIDs per scan request, 0 for one request (or SCAN_CHUNK_SIZE)",
    )
    parser.add_argument(
        "--dry-run",
        dest="dry_run",
        action=argparse.BooleanOptionalAction,
        default=config.dry_run,
        help="Scan and fetch without writing files (or DRY_RUN)",
    )
    parser.add_argument(
        "--tls-skip-verify",
        dest="tls_skip_verify",
        action=argparse.BooleanOptionalAction,
        default=config.tls_skip_verify,
        help="Skip TLS certificate verification (or TLS_SKIP_VERIFY)",
    )
    parser.add_argument("--log-level", dest="log_level", default=config.log_level, help="Log level (or LOG_LEVEL)")
    parser.add_argument(
        "--cron", dest="cron_schedule", default=config.cron_schedule, help="5-field cron schedule (or CRON_SCHEDULE)"
    )
    return parser


def config_from_args(argv=None, env=None):
    config = imap_config.load_config(env)
    args = build_parser(config).parse_args(argv)
    for name, value in vars(args).items():
        if name == "folders":
            config.folders_only = imap_config.parse_folder_list(value)
        else:
            setattr(config, name, value)
    return config


def run(config, stop_event=None):
    """Run one archive pass, or repeat it on the configured cron schedule."""
    config.validate()
    if not config.cron_schedule:
        imap_backup.run_backup(config)
        return

    if stop_event is None:
        stop_event = threading.Event()
    imap_schedule.run_on_schedule(
        config.cron_schedule,
        lambda: imap_backup.run_backup(config),
        stop_event,
        fatal_errors=(AuthError, ConfigInvalid),
    )


def main(argv=None, env=None):
    config = config_from_args(argv, env)
    imap_logging.configure_logging(config.log_level)

    try:
        run(config)
    except ArchiveError as e:
        logger.critical("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
        return 0
    return 0


if __name__ == "__main__":
    sys.exit(main())
