"""Maildir storage for synchronized messages.

Each folder is a directory under the store root with the usual
subdirectories:

- tmp/: messages being written (atomic write in progress)
- new/: delivered by other tools, not yet seen by a mail reader
- cur/: messages we write, and messages a reader has picked up

plus a ``.cursor`` file holding two lines: the folder's UIDVALIDITY and the
highest UID stored locally.

Files written by imap-sync are named::

    <start time>.P<pid>Q<seq>S<marker>.<hostname>,U=<uid>:2,<flags>

The ``S<marker>`` part identifies files we produced, so the scan for
locally created messages can skip them.
"""

from __future__ import annotations

import itertools
import logging
import os
import shutil
import socket
import threading
import time
from collections.abc import Iterator
from typing import BinaryIO

from .errors import ConsistencyError, StorageError
from .flags import MAILDIR_FLAGS, flag_string
from .message import MessageInfo

logger = logging.getLogger("imapsync.maildir")

SYNC_MARKER = "7f4f3b23-ad6c-434d-9fa9-dbfa7a51397e"
CURSOR_FILE = ".cursor"
MAILDIR_SUBDIRS = ("tmp", "cur", "new")

_COPY_CHUNK = 64 * 1024


def is_synced(filename: str) -> bool:
    """Return True if the file was written or renamed by imap-sync."""
    return ("S" + SYNC_MARKER) in filename


def parse_flags(filename: str) -> list[str]:
    """Parse the flag letters from a Maildir filename.

    Parsing stops at the first character that is not a known flag letter.
    """
    parts = filename.split(":")
    if len(parts) < 2 or not parts[1].startswith("2,"):
        return []

    flags = []
    for letter in parts[1][2:]:
        if letter not in MAILDIR_FLAGS:
            break
        flags.append(letter)
    return flags


def parse_uid(filename: str) -> int | None:
    """Extract the ``U=<uid>`` field from a synced filename."""
    base = filename.split(":", 1)[0]
    for part in base.split(","):
        if part.startswith("U="):
            try:
                return int(part[2:])
            except ValueError:
                return None
    return None


class Maildir:
    """Local Maildir store for one account.

    Owns the folder layout, the per-folder cursor, atomic message writes
    and renames, and the scan for unsynchronized local messages.

    Example:
        with Maildir("/home/me/Mail/personal") as md:
            md.create_folder("INBOX")
            uid_validity, last_uid = md.get_cursor("INBOX")
    """

    def __init__(self, path: str | os.PathLike):
        """Open a store rooted at ``path``.

        Args:
            path: Root directory of the store. It must already exist.
        """
        self.path = os.fspath(path)
        self.hostname = socket.gethostname()
        self.pid = os.getpid()
        self.start_time = int(time.time())

        self._seq = itertools.count(1)
        self._seq_lock = threading.Lock()
        self._closed = False
        # folder -> {uid: path} of synced files in cur/, built on first use
        self._synced_index: dict[str, dict[int, str]] = {}

    def __enter__(self) -> Maildir:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """Stop handing out sequence numbers."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _next_seq(self) -> int:
        with self._seq_lock:
            if self._closed:
                raise StorageError(f"Maildir {self.path} is closed")
            return next(self._seq)

    def folder_path(self, folder: str) -> str:
        return os.path.join(self.path, folder)

    def cursor_path(self, folder: str) -> str:
        return os.path.join(self.path, folder, CURSOR_FILE)

    def generate_filename(self, info: MessageInfo) -> str:
        """Build the final filename for a message with a known UID."""
        return (
            f"{self.start_time}.P{self.pid}Q{self._next_seq()}S{SYNC_MARKER}"
            f".{self.hostname},U={info.uid}:2,{flag_string(info.flags)}"
        )

    def create_folder(self, folder: str) -> str:
        """Create a folder with its tmp/, cur/ and new/ subdirectories.

        Safe to call multiple times.

        Returns:
            Path to the folder directory.

        Raises:
            StorageError: If something other than a directory is in the way.
        """
        folder_path = self.folder_path(folder)
        if os.path.exists(folder_path) and not os.path.isdir(folder_path):
            raise StorageError(f"Path {folder_path} is not a directory")

        try:
            for subdir in MAILDIR_SUBDIRS:
                os.makedirs(os.path.join(folder_path, subdir), mode=0o700, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create folder {folder_path}: {e}") from e

        return folder_path

    def get_cursor(self, folder: str) -> tuple[int, int]:
        """Read the (UIDVALIDITY, last UID) pair for a folder.

        Returns (0, 0) when the folder has never been synchronized. A line
        missing at the end of the file reads as 0; a blank line is malformed.

        Raises:
            StorageError: If the cursor file is unreadable or malformed.
        """
        path = self.cursor_path(folder)
        try:
            with open(path, encoding="ascii") as f:
                lines = [f.readline(), f.readline()]
        except FileNotFoundError:
            return 0, 0
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"Cannot read cursor {path}: {e}") from e

        values = []
        for line in lines:
            if not line:
                values.append(0)
                continue
            line = line.strip()
            try:
                value = int(line)
            except ValueError:
                raise StorageError(f"Malformed cursor {path}: {line!r}") from None
            if value < 0:
                raise StorageError(f"Malformed cursor {path}: {line!r}")
            values.append(value)

        return values[0], values[1]

    def check_validity(self, folder: str, uid_validity: int) -> tuple[int, int]:
        """Return the folder cursor, failing if it belongs to another UIDVALIDITY.

        Raises:
            ConsistencyError: The cursor holds a different, non-zero
                UIDVALIDITY.
        """
        stored_validity, stored_uid = self.get_cursor(folder)
        if stored_validity and stored_validity != uid_validity:
            raise ConsistencyError(
                f"UIDVALIDITY for {folder} changed from {stored_validity} "
                f"to {uid_validity}; full resync is not supported"
            )
        return stored_validity, stored_uid

    def _commit_cursor(self, info: MessageInfo) -> None:
        """Persist the message's UIDVALIDITY/UID as the folder cursor.

        The stored UID never goes backwards, and a cursor for a different
        UIDVALIDITY is never overwritten.
        """
        uid = info.uid
        _, stored_uid = self.check_validity(info.folder, info.uid_validity)
        if stored_uid > uid:
            uid = stored_uid

        path = self.cursor_path(info.folder)
        tmp_path = f"{path}.tmp"
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="ascii") as f:
                f.write(f"{info.uid_validity}\n{uid}\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError:
            _remove_quietly(tmp_path)
            raise

    def _synced_files(self, folder: str) -> dict[int, str]:
        index = self._synced_index.get(folder)
        if index is None:
            index = {}
            cur_path = os.path.join(self.folder_path(folder), "cur")
            with os.scandir(cur_path) as entries:
                for entry in entries:
                    if not is_synced(entry.name):
                        continue
                    uid = parse_uid(entry.name)
                    if uid:
                        index[uid] = entry.path
            self._synced_index[folder] = index
        return index

    def add_message(self, info: MessageInfo, body: bytes | BinaryIO) -> MessageInfo:
        """Store a message fetched from the server and advance the cursor.

        The message is written to tmp/, renamed into cur/, and only then is
        the cursor updated. A failure before the rename leaves nothing
        behind in tmp/ or cur/ and does not touch the cursor.

        If a synced file for the same UID already exists (the cursor was not
        advanced after a previous store), it is replaced rather than
        duplicated.

        Args:
            info: Message with folder, uid_validity, uid and flags set.
            body: Raw RFC 822 message, as bytes or a binary file object.

        Returns:
            A copy of ``info`` with ``path`` set to the stored file.
        """
        self.check_validity(info.folder, info.uid_validity)

        filename = self.generate_filename(info)
        folder_path = self.folder_path(info.folder)
        tmp_path = os.path.join(folder_path, "tmp", filename)
        new_path = os.path.join(folder_path, "cur", filename)

        try:
            previous = self._synced_files(info.folder).get(info.uid)
        except OSError as e:
            raise StorageError(f"Cannot list {folder_path}/cur: {e}") from e

        try:
            with open(tmp_path, "xb") as f:
                if isinstance(body, (bytes, bytearray, memoryview)):
                    f.write(body)
                else:
                    shutil.copyfileobj(body, f, _COPY_CHUNK)
        except OSError as e:
            _remove_quietly(tmp_path)
            raise StorageError(f"Cannot write {tmp_path}: {e}") from e

        try:
            os.rename(tmp_path, new_path)
        except OSError as e:
            _remove_quietly(tmp_path)
            raise StorageError(f"Cannot move message into {new_path}: {e}") from e

        if previous and previous != new_path:
            logger.debug(f"Replacing previously stored copy of UID {info.uid}: {previous}")
            _remove_quietly(previous)
        self._synced_index[info.folder][info.uid] = new_path

        try:
            self._commit_cursor(info)
        except OSError as e:
            raise StorageError(
                f"Stored {new_path} but cannot update cursor for {info.folder}: {e}"
            ) from e

        return MessageInfo(
            folder=info.folder,
            path=new_path,
            uid_validity=info.uid_validity,
            uid=info.uid,
            flags=sorted(set(info.flags)),
        )

    def rename_message(self, info: MessageInfo) -> MessageInfo:
        """Give an uploaded local message its synced name and advance the cursor.

        If the cursor cannot be written, the file is moved back to where it
        was.

        Args:
            info: Message with path, uid_validity, uid and flags set.

        Returns:
            A copy of ``info`` with ``path`` set to the new location.
        """
        if not info.path:
            raise StorageError(f"Message {info} has no local path")

        self.check_validity(info.folder, info.uid_validity)

        filename = self.generate_filename(info)
        new_path = os.path.join(self.folder_path(info.folder), "cur", filename)

        try:
            os.rename(info.path, new_path)
        except OSError as e:
            raise StorageError(f"Cannot rename {info.path} to {new_path}: {e}") from e

        try:
            self._commit_cursor(info)
        except (OSError, StorageError, ConsistencyError) as e:
            try:
                os.rename(new_path, info.path)
            except OSError as undo_error:
                logger.error(f"Cannot move {new_path} back to {info.path}: {undo_error}")
            if isinstance(e, ConsistencyError):
                raise
            raise StorageError(
                f"Cannot update cursor for {info.folder} after renaming {info.path}: {e}"
            ) from e

        index = self._synced_index.get(info.folder)
        if index is not None:
            index[info.uid] = new_path

        return MessageInfo(
            folder=info.folder,
            path=new_path,
            uid_validity=info.uid_validity,
            uid=info.uid,
            flags=sorted(set(info.flags)),
        )

    def list_folders(self) -> Iterator[str]:
        """Yield folder names, walking the store one directory at a time.

        A directory is a folder if it has a cur/ subdirectory. Nested
        folders are named by their relative path, joined with "/".
        """
        pending = [""]
        while pending:
            prefix = pending.pop()
            base = os.path.join(self.path, prefix) if prefix else self.path
            try:
                entries = os.scandir(base)
            except OSError as e:
                raise StorageError(f"Cannot read {base}: {e}") from e

            children = []
            with entries:
                for entry in entries:
                    if entry.name.startswith("."):
                        continue
                    if prefix and entry.name in MAILDIR_SUBDIRS:
                        continue
                    if not entry.is_dir():
                        continue
                    children.append(f"{prefix}/{entry.name}" if prefix else entry.name)

            for name in sorted(children):
                if os.path.isdir(os.path.join(self.path, name, "cur")):
                    yield name
            pending.extend(sorted(children, reverse=True))

    def scan(self) -> Iterator[MessageInfo]:
        """Yield messages in cur/ that imap-sync has not handled yet.

        Dotfiles and files carrying the sync marker are skipped. The
        returned records have folder, path and flags, but no UIDs.
        """
        for folder in self.list_folders():
            cur_path = os.path.join(self.folder_path(folder), "cur")
            try:
                entries = os.scandir(cur_path)
            except OSError as e:
                raise StorageError(f"Cannot read {cur_path}: {e}") from e

            with entries:
                for entry in entries:
                    name = entry.name
                    if name.startswith(".") or is_synced(name):
                        continue
                    yield MessageInfo(
                        folder=folder,
                        path=entry.path,
                        flags=parse_flags(name),
                    )


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Cannot remove {path}: {e}")
