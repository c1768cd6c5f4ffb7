"""
IMAP Common Utilities

Mailbox listing and response parsing shared by the scanner and fetcher.
"""

from __future__ import annotations

import logging
import re

from imap_errors import ProtocolError

logger = logging.getLogger(__name__)

ATTR_NOSELECT = "\\noselect"

# (flags) "delimiter" name  |  (flags) NIL name
_LIST_PATTERN = re.compile(
    r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s*(?P<name>.*)$',
    re.IGNORECASE,
)
_UID_PATTERN = re.compile(r"UID\s+(\d+)", re.IGNORECASE)
_UIDNEXT_PATTERN = re.compile(r"UIDNEXT\s+(\d+)", re.IGNORECASE)


def _to_str(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


def _unquote(name: str) -> str:
    name = name.strip()
    if len(name) >= 2 and name.startswith('"') and name.endswith('"'):
        name = name[1:-1]
        name = re.sub(r"\\(.)", r"\1", name)
    return name


def parse_list_entry(entry) -> tuple[set[str], str]:
    """
    Parses one LIST response item into (attributes, mailbox name).

    Handles quoted and unquoted names, NIL delimiters, and names sent as
    literals (imaplib returns those as a (prefix, name) tuple).
    Attributes are lower-cased for comparison.
    """
    literal_name = None
    if isinstance(entry, tuple):
        entry, literal_name = entry[0], entry[1]

    line = _to_str(entry).strip()
    match = _LIST_PATTERN.match(line)
    if not match:
        # Fallback: take the last part
        return set(), _unquote(line.split()[-1]) if line else ""

    attributes = {flag.lower() for flag in match.group("flags").split()}
    if literal_name is not None:
        name = _to_str(literal_name)
    else:
        name = _unquote(match.group("name"))
    return attributes, name


def list_selectable_folders(session):
    """
    Lists all selectable mailboxes (excluding \\Noselect hierarchy nodes).

    Order follows the server response and should be treated as unordered.

    Raises:
        ProtocolError: LIST failed. Partial results are discarded.
    """
    status, entries = session.list_mailboxes()
    if status != "OK":
        raise ProtocolError(f"LIST failed: {status} {entries}")

    result = []
    for entry in entries or []:
        if entry is None:
            continue
        attributes, name = parse_list_entry(entry)
        if ATTR_NOSELECT in attributes:
            logger.debug("Skipping non-selectable mailbox %s", name)
            continue
        if name:
            result.append(name)
    return result


def parse_fetch_uids(data) -> list[int]:
    """Extracts the UIDs from a UID FETCH response (tuples, bytes, or None items)."""
    uids = []
    for item in data or []:
        if item is None:
            continue
        meta = item[0] if isinstance(item, tuple) else item
        match = _UID_PATTERN.search(_to_str(meta))
        if match:
            uids.append(int(match.group(1)))
    return uids


def parse_uidnext(data) -> int | None:
    """Extracts UIDNEXT from a STATUS response or a UIDNEXT response-code list."""
    for item in data or []:
        if item is None:
            continue
        text = _to_str(item[0] if isinstance(item, tuple) else item).strip()
        if text.isdigit():
            return int(text)
        match = _UIDNEXT_PATTERN.search(text)
        if match:
            return int(match.group(1))
    return None


def extract_message_body(data) -> bytes | None:
    """Returns the literal payload of the first message in a FETCH response."""
    for item in data or []:
        if isinstance(item, tuple) and len(item) >= 2 and item[1]:
            return item[1]
    return None
