"""
Google OAuth2 Token Management

Access tokens for Gmail IMAP (XOAUTH2), backed by a token file on disk.

- An existing token file is loaded and used while it is unexpired or can be
  refreshed through its refresh token.
- Otherwise an authorization-code login runs once: the authorization URL is
  shown, the user pastes the code from the redirect URL, and the code is
  exchanged for an access + refresh token pair.
- Expired access tokens are refreshed right before use, and every new token is
  written back to the token file immediately (mode 0600).

Requires the 'google-auth-oauthlib' package: pip install google-auth-oauthlib
"""

from __future__ import annotations

import datetime
import json
import logging
import os
import threading
import urllib.parse

import google.auth.exceptions
import google.auth.transport.requests
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from imap_errors import ConfigInvalid, ExchangeFailed, RefreshFailed

logger = logging.getLogger(__name__)

SCOPES = ["https://mail.google.com/"]
REDIRECT_URI = "http://localhost"
DEFAULT_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Lifetime assumed for exchanged tokens that come back without an expiry
DEFAULT_TOKEN_LIFETIME = datetime.timedelta(hours=1)


def auth_uri() -> str:
    return os.getenv("OAUTH2_GOOGLE_AUTH_URL") or DEFAULT_AUTH_URI


def token_uri() -> str:
    return os.getenv("OAUTH2_GOOGLE_TOKEN_URL") or DEFAULT_TOKEN_URI


def _utcnow() -> datetime.datetime:
    # google-auth compares expiries as naive UTC datetimes
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def _parse_expiry(value) -> datetime.datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return parsed


def _format_expiry(expiry: datetime.datetime | None) -> str | None:
    if expiry is None:
        return None
    return expiry.replace(tzinfo=datetime.timezone.utc).isoformat().replace("+00:00", "Z")


class ConsoleAuthorizer:
    """Interactive authorizer that prints the URL and reads the code from stdin."""

    def present_url(self, url: str) -> None:
        print("\nOpen this URL in a browser, sign in, and copy the code from the redirect URL:")
        print(url)

    def read_code(self) -> str:
        return input("\nEnter code: ")


def extract_auth_code(raw: str | None) -> str:
    """
    Normalize what the user pasted into a bare authorization code.

    Accepts either the URL-escaped code itself or the whole redirect URL
    (http://localhost/?code=...&scope=...).
    """
    if not raw:
        return ""
    raw = raw.strip()
    if "code=" in raw:
        query = urllib.parse.urlparse(raw).query or raw.split("?", 1)[-1]
        codes = urllib.parse.parse_qs(query).get("code")
        if codes:
            return codes[0].strip()
    return urllib.parse.unquote(raw)


def load_token(path: str, client_id: str, client_secret: str) -> Credentials | None:
    """
    Load a token file into google-auth Credentials.

    Returns None when the file is missing, unreadable, or holds no usable token.
    Field names follow the golang oauth2 token format (access_token,
    refresh_token, expiry), with camelCase names accepted as well.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning("Could not read token file %s: %s", path, e)
        return None

    if not isinstance(data, dict):
        logger.warning("Ignoring token file %s: not a JSON object", path)
        return None

    access_token = data.get("access_token") or data.get("accessToken")
    refresh_token = data.get("refresh_token") or data.get("refreshToken")
    if not access_token and not refresh_token:
        return None

    return Credentials(
        token=access_token or None,
        refresh_token=refresh_token or None,
        token_uri=token_uri(),
        client_id=client_id,
        client_secret=client_secret,
        scopes=SCOPES,
        expiry=_parse_expiry(data.get("expiry")),
    )


def save_token(path: str, credentials: Credentials) -> None:
    """Write the token file with owner-only permissions, creating its directory (0700)."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, mode=0o700, exist_ok=True)

    payload = {
        "access_token": credentials.token,
        "token_type": "Bearer",
        "refresh_token": credentials.refresh_token,
        "expiry": _format_expiry(credentials.expiry),
    }

    tmp_path = f"{path}.tmp"
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, path)


def is_usable(credentials: Credentials | None) -> bool:
    """True when the access token is unexpired or a refresh token can renew it."""
    if credentials is None:
        return False
    if credentials.token and not credentials.expired:
        return True
    return bool(credentials.refresh_token)


class GoogleTokenProvider:
    """
    Resolves and refreshes the OAuth2 access token for one account.

    Thread-safe: concurrent IMAP sessions share one provider, and refreshes
    are serialized so the token file is written by one thread at a time.

    Args:
        client_id: OAuth2 client ID
        client_secret: OAuth2 client secret
        token_file: Path of the persisted token JSON
        authorizer: Object with present_url(url) and read_code(); defaults to
            ConsoleAuthorizer. Only used when no usable token file exists.
        request_factory: Callable returning a google-auth transport Request.
    """

    def __init__(self, client_id, client_secret, token_file, authorizer=None, request_factory=None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_file = token_file
        self._authorizer = authorizer or ConsoleAuthorizer()
        self._request_factory = request_factory or google.auth.transport.requests.Request
        self._credentials = None
        self._lock = threading.Lock()

    def client_config(self) -> dict:
        return {
            "installed": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": auth_uri(),
                "token_uri": token_uri(),
                "redirect_uris": [REDIRECT_URI],
            }
        }

    def resolve(self) -> str:
        """
        Load the token file or run the interactive login, then return a valid
        access token (refreshing and persisting it first if it has expired).
        """
        with self._lock:
            if self._credentials is None:
                credentials = load_token(self.token_file, self.client_id, self.client_secret)
                if is_usable(credentials):
                    logger.info("Loaded cached token from %s", self.token_file)
                else:
                    logger.info("No valid token found, performing new OAuth2 login flow...")
                    credentials = self._login()
                self._credentials = credentials
            return self._fresh_token()

    def access_token(self) -> str:
        """Return a valid access token, refreshing it if expired."""
        if self._credentials is None:
            return self.resolve()
        with self._lock:
            return self._fresh_token()

    def _fresh_token(self) -> str:
        credentials = self._credentials
        if not credentials.token or credentials.expired:
            self._refresh(credentials)
        return credentials.token

    def _refresh(self, credentials: Credentials) -> None:
        if not credentials.refresh_token:
            raise RefreshFailed("Access token expired and no refresh token is available")

        logger.info("Refreshing OAuth2 access token...")
        try:
            credentials.refresh(self._request_factory())
        except google.auth.exceptions.GoogleAuthError as e:
            raise RefreshFailed(f"Failed to refresh token: {e}") from e

        if not credentials.token:
            raise RefreshFailed("Token endpoint returned no access token")
        if credentials.expiry is None:
            credentials.expiry = _utcnow() + DEFAULT_TOKEN_LIFETIME

        self._persist(credentials)

    def _login(self) -> Credentials:
        flow = Flow.from_client_config(self.client_config(), scopes=SCOPES, redirect_uri=REDIRECT_URI)
        url, _state = flow.authorization_url(access_type="offline", prompt="consent")

        self._authorizer.present_url(url)
        code = extract_auth_code(self._authorizer.read_code())
        if not code:
            raise ExchangeFailed("No authorization code entered")

        try:
            flow.fetch_token(code=code)
            credentials = flow.credentials
        except Exception as e:
            raise ExchangeFailed(f"OAuth2 code exchange failed: {e}") from e

        if not credentials or not credentials.token:
            raise ExchangeFailed("OAuth2 code exchange returned no access token")
        if credentials.expiry is None:
            credentials.expiry = _utcnow() + DEFAULT_TOKEN_LIFETIME

        self._persist(credentials)
        return credentials

    def _persist(self, credentials: Credentials) -> None:
        try:
            save_token(self.token_file, credentials)
        except OSError as e:
            logger.warning("Failed to save token to %s: %s", self.token_file, e)
            return
        logger.info("Saved token to %s", self.token_file)


def ensure_token(client_id, client_secret, token_file, authorizer=None) -> str:
    """Resolve a token once (interactive login if needed) and return the access token."""
    if not client_id or not client_secret:
        raise ConfigInvalid("OAuth2 client ID and client secret are required")
    provider = GoogleTokenProvider(client_id, client_secret, token_file, authorizer=authorizer)
    return provider.resolve()
