"""
Local Message Store

One file per downloaded message at {backup_dir}/{mailbox}/{uid}.eml, where the
mailbox name has "/" replaced by "_". Files are written once and never
rewritten; presence of the file is what marks a UID as already archived.
"""

from __future__ import annotations

import os


def mailbox_dir_name(mailbox: str) -> str:
    return mailbox.replace("/", "_")


class MessageStore:
    """
    Filesystem layout and writes for archived messages.

    In dry-run mode nothing is created or written, but path and existence
    checks behave normally.
    """

    def __init__(self, backup_dir: str, dry_run: bool = False):
        self.backup_dir = os.path.expanduser(backup_dir)
        self.dry_run = dry_run

    def mailbox_dir(self, mailbox: str) -> str:
        return os.path.join(self.backup_dir, mailbox_dir_name(mailbox))

    def message_path(self, mailbox: str, uid: int) -> str:
        return os.path.join(self.mailbox_dir(mailbox), f"{uid}.eml")

    def exists(self, mailbox: str, uid: int) -> bool:
        return os.path.exists(self.message_path(mailbox, uid))

    def ensure_mailbox_dir(self, mailbox: str) -> str:
        path = self.mailbox_dir(mailbox)
        if not self.dry_run:
            os.makedirs(path, mode=0o755, exist_ok=True)
        return path

    def write(self, mailbox: str, uid: int, data: bytes) -> bool:
        """
        Atomically write a message file (temp file + rename).

        Returns False without touching the disk in dry-run mode or when the
        file already exists.

        Raises:
            OSError: The file could not be written.
        """
        if self.dry_run:
            return False

        path = self.message_path(mailbox, uid)
        if os.path.exists(path):
            return False

        os.makedirs(os.path.dirname(path), mode=0o755, exist_ok=True)
        tmp_path = f"{path}.tmp"
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return True
