"""
IMAP OAuth2 Authentication

Login strategies for an IMAP session: plain LOGIN with an app password, or
SASL XOAUTH2 with a bearer token from the Google token provider.

Token expiry during a long run is handled by re-authenticating: sessions call
login() again on reconnect, which refreshes the token first when needed.
"""

import logging

import oauth2_google
from imap_errors import ConfigInvalid

logger = logging.getLogger(__name__)


def is_token_expired_error(error):
    """
    Check if an exception indicates OAuth2 token expiration.

    Args:
        error: The exception to check

    Returns:
        True if the error indicates token expiration, False otherwise
    """
    error_str = str(error).lower()
    return "accesstokenexpired" in error_str or "session invalidated" in error_str


def is_auth_error(error):
    """
    Check if an exception indicates an authentication failure that may be recoverable
    by reconnecting (token expiration, session loss, etc.).
    """
    error_str = str(error).lower()
    return is_token_expired_error(error) or "not authenticated" in error_str or "authentication failed" in error_str


def build_xoauth2_string(user, token):
    return f"user={user}\x01auth=Bearer {token}\x01\x01"


class XOAuth2Authenticator:
    """
    imaplib authobject for a single-round-trip XOAUTH2 exchange.

    The first challenge is answered with the initial client response. Any later
    challenge carries the server's error details and is answered with an empty
    response so the server completes the exchange (with NO).
    """

    def __init__(self, user, token):
        self._payload = build_xoauth2_string(user, token).encode()
        self.completed = False

    def __call__(self, challenge):
        if self.completed:
            if challenge:
                logger.debug("XOAUTH2 error challenge: %r", challenge)
            return b""
        self.completed = True
        return self._payload


class PasswordCredentials:
    """Plain LOGIN with an email address and (app) password."""

    description = "Basic (password)"

    def __init__(self, email, password):
        self.email = email
        self._password = password

    def login(self, conn):
        conn.login(self.email, self._password)


class OAuth2Credentials:
    """XOAUTH2 login using a token provider that refreshes expired tokens."""

    description = "OAuth2/google (XOAUTH2)"

    def __init__(self, email, token_provider):
        self.email = email
        self.token_provider = token_provider

    def login(self, conn):
        token = self.token_provider.access_token()
        conn.authenticate("XOAUTH2", XOAuth2Authenticator(self.email, token))


def build_credentials(config, authorizer=None, token_provider=None):
    """
    Validate the configured credential variant and resolve it once.

    For OAuth2 this loads or refreshes the token (and may run the interactive
    login) before any IMAP connection is opened.

    Args:
        config: BackupConfig
        authorizer: Interactive authorizer passed to the token provider
        token_provider: Pre-built provider (tests); built from config otherwise

    Returns:
        PasswordCredentials or OAuth2Credentials

    Raises:
        ConfigInvalid: No usable credential variant.
        AuthError: Token exchange or refresh failed.
    """
    config.validate()

    if config.uses_oauth2:
        if config.password:
            logger.warning("Both GMAIL_PASSWORD and OAuth2 client configured; using OAuth2")
        if token_provider is None:
            token_provider = oauth2_google.GoogleTokenProvider(
                config.client_id, config.client_secret, config.token_file, authorizer=authorizer
            )
        logger.info("Using OAuth2")
        token_provider.resolve()
        return OAuth2Credentials(config.email, token_provider)

    if not config.password:
        raise ConfigInvalid("GMAIL_PASSWORD is required when OAuth2 is not configured")
    logger.info("Using app password")
    return PasswordCredentials(config.email, config.password)
