"""
Gmail OAuth2 Authentication

Runs only the OAuth2 part of the archiver: performs the interactive
authorization-code login when no usable token file exists (or refreshes an
expired token) and writes the token file, so that later archive runs, for
example from cron or a container, never need a terminal.

Usage:
    python3 authenticate_gmail.py \
        --email "you@gmail.com" \
        --client-id "xxx.apps.googleusercontent.com" \
        --client-secret "yyy"
"""

import argparse
import logging
import sys

import imap_config
import imap_logging
import oauth2_google
from imap_errors import ArchiveError, ConfigInvalid

logger = logging.getLogger("authenticate_gmail")


def main(argv=None, env=None, authorizer=None):
    config = imap_config.load_config(env)

    parser = argparse.ArgumentParser(description="Obtain and store a Gmail OAuth2 token for the archiver.")
    parser.add_argument("--email", default=config.email, help="Account address (or GMAIL_EMAIL)")
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
        "--token-file", dest="token_file", default=config.token_file, help="Token file (or OAUTH2_TOKEN_FILE)"
    )
    parser.add_argument("--log-level", dest="log_level", default=config.log_level, help="Log level (or LOG_LEVEL)")
    args = parser.parse_args(argv)

    imap_logging.configure_logging(args.log_level)

    try:
        if not args.email:
            raise ConfigInvalid("GMAIL_EMAIL is required")
        oauth2_google.ensure_token(args.client_id, args.client_secret, args.token_file, authorizer=authorizer)
    except ArchiveError as e:
        logger.critical("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
        return 0

    logger.info("Authenticated %s, token stored in %s", args.email, args.token_file)
    return 0


if __name__ == "__main__":
    sys.exit(main())
