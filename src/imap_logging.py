"""
IMAP Archive Logging

Log setup for the archiver. Every record carries a short thread name so that
interleaved output from concurrent mailbox workers stays readable.
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(short_thread)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def short_thread_name(name: str) -> str:
    """Shorten executor thread names for logs (ThreadPoolExecutor-0_1 -> T-0_1)."""
    return name.replace("ThreadPoolExecutor-", "T-").replace("MainThread", "MAIN")


class ShortThreadNameFilter(logging.Filter):
    def filter(self, record):
        record.short_thread = short_thread_name(record.threadName or "")
        return True


def parse_level(level_name: str | None) -> int | None:
    """Return the numeric level for a name like "debug" or "WARN", or None if unknown."""
    if not level_name:
        return None
    name = level_name.strip().upper()
    if name == "WARN":
        name = "WARNING"
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else None


def configure_logging(level_name: str = "INFO", stream=None) -> int:
    """
    Install a single stream handler on the root logger.

    Unknown level names fall back to INFO with a warning. Calling this again
    replaces the previous handler rather than stacking a second one.

    Returns:
        The numeric level that was applied.
    """
    level = parse_level(level_name)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    handler.addFilter(ShortThreadNameFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_imap_archive_handler", False):
            root.removeHandler(existing)
    handler._imap_archive_handler = True
    root.addHandler(handler)
    root.setLevel(level if level is not None else logging.INFO)

    if level is None:
        logging.getLogger(__name__).warning("Unknown LOG_LEVEL %r, using INFO", level_name)
        return logging.INFO
    return level
