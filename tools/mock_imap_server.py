import base64
import re
import socketserver
import threading
import time

RESPONSE_SELECT_FIRST = "NO Select first"

_MAILBOX_ARG = re.compile(r'^\s*("(?:[^"\\]|\\.)*"|\S+)\s*(.*)$')
_BEARER = re.compile(r"auth=Bearer ([^\x01]*)")


def unquote_mailbox(arg):
    arg = arg.strip()
    if len(arg) >= 2 and arg.startswith('"') and arg.endswith('"'):
        return re.sub(r"\\(.)", r"\1", arg[1:-1])
    return arg


def make_message(uid, content, flags=None):
    return {"uid": uid, "flags": set(flags or ()), "content": content}


def parse_uid_set(uid_set, max_uid):
    """Expand "1:5,9,12:*" into a predicate on UIDs."""
    ranges = []
    for part in uid_set.split(","):
        if ":" in part:
            lo, hi = part.split(":", 1)
            lo = max_uid if lo == "*" else int(lo)
            hi = max_uid if hi == "*" else int(hi)
            ranges.append((min(lo, hi), max(lo, hi)))
        else:
            value = max_uid if part == "*" else int(part)
            ranges.append((value, value))
    return lambda uid: any(lo <= uid <= hi for lo, hi in ranges)


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """
    A minimal IMAP4rev1 mock server handler for testing purposes.
    Supports the commands used by the archiver plus fault injection
    (failing SELECTs, stalled FETCH responses, slow message bodies).
    """

    def handle(self):
        self.wfile.write(b"* OK [CAPABILITY IMAP4rev1 AUTH=PLAIN AUTH=XOAUTH2] Mock IMAP Server Ready\r\n")
        self.selected_folder = None
        self.current_folders = self.server.folders

        while True:
            try:
                line = self.rfile.readline()
                if not line:
                    break
                line = line.decode("utf-8").strip()
                if not line:
                    continue

                parts = line.split(" ", 2)
                tag = parts[0]
                cmd = parts[1].upper()
                args = parts[2] if len(parts) > 2 else ""
                self.server.record(f"{cmd} {args}".strip())

                if cmd == "LOGIN":
                    self.handle_login(tag, args)

                elif cmd == "AUTHENTICATE":
                    self.handle_authenticate(tag, args)

                elif cmd == "LOGOUT":
                    self.wfile.write(b"* BYE Mock IMAP Server logging out\r\n")
                    self.send_response(tag, "OK LOGOUT completed")
                    break

                elif cmd == "CAPABILITY":
                    self.wfile.write(b"* CAPABILITY IMAP4rev1 AUTH=PLAIN AUTH=XOAUTH2\r\n")
                    self.send_response(tag, "OK CAPABILITY completed")

                elif cmd == "LIST":
                    if self.server.list_error:
                        self.send_response(tag, "NO LIST failed")
                        continue
                    for folder in self.server.noselect:
                        self.wfile.write(f'* LIST (\\Noselect \\HasChildren) "/" "{folder}"\r\n'.encode())
                    for folder in self.current_folders:
                        self.wfile.write(f'* LIST (\\HasNoChildren) "/" "{folder}"\r\n'.encode())
                    self.send_response(tag, "OK LIST completed")

                elif cmd in ("SELECT", "EXAMINE"):
                    self.handle_select(tag, cmd, args)

                elif cmd == "STATUS":
                    match = _MAILBOX_ARG.match(args)
                    folder = unquote_mailbox(match.group(1)) if match else ""
                    if folder in self.current_folders:
                        uid_next = self.server.uid_next(folder)
                        self.wfile.write(f'* STATUS "{folder}" (UIDNEXT {uid_next})\r\n'.encode())
                        self.send_response(tag, "OK STATUS completed")
                    else:
                        self.send_response(tag, "NO [NONEXISTENT] Folder not found")

                elif cmd == "UID":
                    sub_parts = args.split(" ", 1)
                    sub_cmd = sub_parts[0].upper()
                    sub_rest = sub_parts[1] if len(sub_parts) > 1 else ""

                    if sub_cmd == "FETCH":
                        self.handle_uid_fetch(tag, sub_rest)
                    else:
                        self.send_response(tag, "BAD Command not supported by mock")

                elif cmd == "NOOP":
                    self.send_response(tag, "OK NOOP")

                else:
                    self.send_response(tag, "BAD Command not recognized")

                self.wfile.flush()

            except Exception:
                break

    def handle_login(self, tag, args):
        credentials = args.split(" ", 1)
        password = credentials[1].strip().strip('"') if len(credentials) > 1 else ""
        if self.server.valid_passwords is not None and password not in self.server.valid_passwords:
            self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials (Failure)")
            return
        self.server.logins += 1
        self.send_response(tag, "OK LOGIN completed")

    def handle_authenticate(self, tag, args):
        if args.strip().upper() != "XOAUTH2":
            self.send_response(tag, "NO Unsupported mechanism")
            return

        self.wfile.write(b"+ \r\n")
        self.wfile.flush()
        response = self.rfile.readline().strip()
        try:
            payload = base64.b64decode(response).decode("utf-8")
        except ValueError:
            self.send_response(tag, "BAD Invalid SASL response")
            return

        match = _BEARER.search(payload)
        token = match.group(1) if match else ""
        self.server.auth_tokens.append(token)

        if self.server.valid_tokens is not None and token not in self.server.valid_tokens:
            error = base64.b64encode(b'{"status":"401","schemes":"Bearer","scope":"https://mail.google.com/"}')
            self.wfile.write(b"+ " + error + b"\r\n")
            self.wfile.flush()
            self.rfile.readline()
            self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials (Failure)")
            return

        self.server.logins += 1
        self.send_response(tag, "OK AUTHENTICATE completed")

    def handle_select(self, tag, cmd, args):
        folder = unquote_mailbox(args)
        self.server.select_times.append((folder, time.monotonic()))
        self.selected_folder = None

        remaining = self.server.select_failures.get(folder, 0)
        if remaining > 0:
            self.server.select_failures[folder] = remaining - 1
            self.send_response(tag, "NO [UNAVAILABLE] Temporary failure")
            return

        if folder not in self.current_folders:
            self.send_response(tag, "NO [NONEXISTENT] Folder not found")
            return

        self.selected_folder = folder
        count = len(self.current_folders[folder])
        self.wfile.write(f"* {count} EXISTS\r\n".encode())
        self.wfile.write(b"* 0 RECENT\r\n")
        self.wfile.write(b"* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)\r\n")
        self.wfile.write(b"* OK [UIDVALIDITY 1] UIDs valid\r\n")
        if not self.server.omit_uidnext:
            self.wfile.write(f"* OK [UIDNEXT {self.server.uid_next(folder)}] Predicted next UID\r\n".encode())
        if cmd == "EXAMINE":
            self.send_response(tag, "OK [READ-ONLY] EXAMINE completed")
        else:
            self.send_response(tag, "OK [READ-WRITE] SELECT completed")

    def handle_uid_fetch(self, tag, sub_rest):
        # sub_rest is e.g. "1:1000 (UID)" or "42 (BODY.PEEK[])"
        parts = sub_rest.split(" ", 1)
        uid_set = parts[0]
        opts = parts[1].upper() if len(parts) > 1 else ""

        if not self.selected_folder:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return

        msgs = self.current_folders[self.selected_folder]
        max_uid = max((m["uid"] for m in msgs), default=0)
        try:
            matches = parse_uid_set(uid_set, max_uid)
        except ValueError:
            self.send_response(tag, "BAD Invalid UID set")
            return

        want_body = "BODY" in opts or "RFC822" in opts
        sent = 0
        for seq, m in enumerate(msgs, start=1):
            if not matches(m["uid"]):
                continue

            if not want_body and self.server.stall_after is not None and sent == self.server.stall_after:
                self.wfile.flush()
                time.sleep(self.server.stall_seconds)

            if want_body:
                delay = self.server.body_delays.get(m["uid"], 0)
                if delay:
                    time.sleep(delay)
                if "BODY.PEEK" not in opts:
                    m["flags"].add("\\Seen")
                content = m["content"]
                resp = f"* {seq} FETCH (UID {m['uid']} BODY[] {{{len(content)}}}\r\n"
                self.wfile.write(resp.encode("utf-8"))
                self.wfile.write(content)
                self.wfile.write(b")\r\n")
                self.server.body_fetches.append((self.selected_folder, m["uid"]))
            else:
                self.wfile.write(f"* {seq} FETCH (UID {m['uid']})\r\n".encode())
            self.wfile.flush()
            sent += 1

        self.send_response(tag, "OK FETCH completed")

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """
    In-process IMAP server. Folders map names to lists of message dicts
    ({"uid", "flags", "content"}); plain bytes are numbered from UID 1.

    Fault injection and inspection attributes can be set directly on the
    server object from tests.
    """

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, request_handler_class, initial_folders=None):
        super().__init__(server_address, request_handler_class)
        self.folders = {}
        if initial_folders:
            for fname, contents in initial_folders.items():
                self.folders[fname] = []
                for i, c in enumerate(contents):
                    if isinstance(c, bytes):
                        self.folders[fname].append(make_message(i + 1, c))
                    else:
                        self.folders[fname].append(c)
        else:
            self.folders = {"INBOX": []}

        self.noselect = []
        self.list_error = False
        self.omit_uidnext = False
        self.uid_next_override = {}
        self.select_failures = {}
        self.stall_after = None
        self.stall_seconds = 0.0
        self.body_delays = {}
        self.valid_passwords = None
        self.valid_tokens = None

        self.logins = 0
        self.auth_tokens = []
        self.commands = []
        self.select_times = []
        self.body_fetches = []
        self._lock = threading.Lock()

    def record(self, command):
        with self._lock:
            self.commands.append(command)

    def uid_next(self, folder):
        if folder in self.uid_next_override:
            return self.uid_next_override[folder]
        return max((m["uid"] for m in self.folders[folder]), default=0) + 1

    @property
    def port(self):
        return self.server_address[1]


def start_server_thread(port=0, initial_folders=None):
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders)
    t = threading.Thread(target=server.serve_forever)
    t.daemon = True
    t.start()
    return t, server
