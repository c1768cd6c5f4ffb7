import itertools
import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse


def _write_json(handler, status, payload):
    body = json.dumps(payload).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


class MockOAuthHandler(BaseHTTPRequestHandler):
    """Minimal Google-style OAuth2 token endpoint for tests."""

    def do_POST(self):
        parsed = urlparse(self.path)
        length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(length) if length else b""
        form = {key: values[0] for key, values in parse_qs(raw.decode("utf-8")).items()}

        if parsed.path != "/token":
            _write_json(self, 404, {"error": "not_found"})
            return

        server = self.server
        server.requests.append(form)
        grant_type = form.get("grant_type")

        if grant_type == "authorization_code":
            if form.get("code") not in server.valid_codes:
                _write_json(self, 400, {"error": "invalid_grant", "error_description": "Malformed auth code."})
                return
            _write_json(self, 200, server.issue(refresh_token="mock-refresh-token"))
            return

        if grant_type == "refresh_token":
            if form.get("refresh_token") in server.revoked_refresh_tokens:
                _write_json(self, 400, {"error": "invalid_grant", "error_description": "Token has been revoked."})
                return
            _write_json(self, 200, server.issue())
            return

        _write_json(self, 400, {"error": "unsupported_grant_type"})

    def log_message(self, _format, *_args):
        # Silence default HTTP server logging during tests.
        return


class MockOAuthServer(HTTPServer):
    allow_reuse_address = True

    def __init__(self, server_address, handler_class):
        super().__init__(server_address, handler_class)
        self.valid_codes = {"mock-auth-code"}
        self.revoked_refresh_tokens = set()
        self.expires_in = 3600
        self.requests = []
        self._counter = itertools.count(1)

    def issue(self, refresh_token=None):
        payload = {
            "access_token": f"mock-access-token-{next(self._counter)}",
            "expires_in": self.expires_in,
            "token_type": "Bearer",
            "scope": "https://mail.google.com/",
        }
        if refresh_token:
            payload["refresh_token"] = refresh_token
        return payload

    @property
    def token_url(self):
        return f"http://localhost:{self.server_address[1]}/token"


def start_server_thread(port=0):
    server = MockOAuthServer(("localhost", port), MockOAuthHandler)
    thread = threading.Thread(target=server.serve_forever)
    thread.daemon = True
    thread.start()
    return thread, server
