"""Push and pull passes between an IMAP session and a Maildir.

Blocking IMAP and filesystem calls run in the default executor so the
local scan can stream into the push loop while uploads are in flight.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from typing import Any

from .errors import ConsistencyError, StorageError
from .flags import from_imap, to_imap
from .imap_client import ImapSession
from .maildir import Maildir
from .message import MessageInfo

logger = logging.getLogger("imapsync.sync")

SCAN_QUEUE_SIZE = 100
# Log pull progress every this many messages per folder
PROGRESS_INTERVAL = 100

_SCAN_DONE = object()


@dataclass
class SyncResult:
    """Counts of messages moved during one account run."""

    uploaded: int = 0
    downloaded: int = 0
    uploaded_by_folder: dict[str, int] = field(default_factory=dict)
    downloaded_by_folder: dict[str, int] = field(default_factory=dict)

    def add_upload(self, folder: str) -> None:
        self.uploaded += 1
        self.uploaded_by_folder[folder] = self.uploaded_by_folder.get(folder, 0) + 1

    def add_download(self, folder: str) -> None:
        self.downloaded += 1
        self.downloaded_by_folder[folder] = self.downloaded_by_folder.get(folder, 0) + 1


class _ScanFailed:
    def __init__(self, error: BaseException):
        self.error = error


class Synchronizer:
    """Synchronize one account's Maildir with its IMAP session.

    The push pass uploads messages that were created locally and renames
    them to their synced name. The pull pass downloads, per folder, every
    message with a UID above the folder cursor.

    Any failure is raised and ends the run; nothing is retried.

    Example:
        sync = Synchronizer(session, maildir)
        result = await sync.run()
    """

    def __init__(self, session: ImapSession, maildir: Maildir):
        self.session = session
        self.maildir = maildir
        self.result = SyncResult()
        # folders whose UIDVALIDITY was checked during the current push
        self._checked_folders: set[str] = set()

    @property
    def account_name(self) -> str:
        return self.session.account.name

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def run(self, *, push: bool = True, pull: bool = True) -> SyncResult:
        """Run the push pass, then the pull pass."""
        if push:
            await self.push()
        if pull:
            await self.pull()
        return self.result

    async def _produce_scan(self, queue: asyncio.Queue) -> None:
        """Feed Maildir.scan() into ``queue``, ending with a sentinel.

        The scan is closed on the way out, after any step still running in
        the executor has finished.
        """
        loop = asyncio.get_running_loop()
        scan: Generator[MessageInfo, None, None] = self.maildir.scan()
        step: asyncio.Future | None = None
        try:
            while True:
                step = loop.run_in_executor(None, next, scan, _SCAN_DONE)
                info = await asyncio.shield(step)
                if info is _SCAN_DONE:
                    break
                await queue.put(info)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put(_ScanFailed(e))
            return
        finally:
            if step is not None:
                await asyncio.gather(step, return_exceptions=True)
            await self._call(scan.close)
        await queue.put(_SCAN_DONE)

    async def push(self) -> int:
        """Upload locally created messages and rename them as synced.

        Returns:
            Number of messages uploaded.
        """
        self._checked_folders.clear()
        queue: asyncio.Queue = asyncio.Queue(maxsize=SCAN_QUEUE_SIZE)
        producer = asyncio.create_task(self._produce_scan(queue))
        uploaded = 0

        try:
            while True:
                item = await queue.get()
                if item is _SCAN_DONE:
                    break
                if isinstance(item, _ScanFailed):
                    raise item.error
                await self.push_message(item)
                uploaded += 1
        finally:
            if not producer.done():
                producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)

        if uploaded:
            logger.info(f"[{self.account_name}] Uploaded {uploaded} local messages")
        return uploaded

    def _read_file(self, path: str) -> bytes:
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

    async def _check_validity(self, folder: str) -> None:
        """Fail if the server folder's UIDVALIDITY differs from the local cursor."""
        if folder in self._checked_folders:
            return
        remote_validity, _ = await self._call(self.session.select_folder, folder)
        local_validity, _ = await self._call(self.maildir.get_cursor, folder)
        if local_validity and local_validity != remote_validity:
            raise ConsistencyError(
                f"[{self.account_name}] UIDVALIDITY for {folder} changed "
                f"from {local_validity} to {remote_validity}; full resync is not supported"
            )
        self._checked_folders.add(folder)

    async def push_message(self, info: MessageInfo) -> MessageInfo:
        """Upload one local message and rename it to carry its new UID.

        Raises:
            ConsistencyError: The folder's UIDVALIDITY changed since the
                last run. Nothing is uploaded.
        """
        await self._check_validity(info.folder)
        body = await self._call(self._read_file, info.path)
        uid_validity, uid = await self._call(self.session.upload, info.folder, info.flags, body)

        uploaded = MessageInfo(
            folder=info.folder,
            path=info.path,
            uid_validity=uid_validity,
            uid=uid,
            flags=from_imap(to_imap(info.flags)),
        )
        renamed = await self._call(self.maildir.rename_message, uploaded)
        self.result.add_upload(info.folder)
        logger.debug(f"[{self.account_name}] Uploaded {info.path} as {info.folder}/{uid}")
        return renamed

    async def pull(self) -> int:
        """Download new messages from every selected server folder.

        Returns:
            Number of messages downloaded.
        """
        folders = await self._call(self.session.list_folders)
        downloaded = 0
        for folder in folders:
            downloaded += await self.pull_folder(folder)
        return downloaded

    async def pull_folder(self, folder: str) -> int:
        """Download the messages above the folder cursor, in UID order.

        Raises:
            ConsistencyError: The folder's UIDVALIDITY changed since the
                last run.
        """
        await self._call(self.maildir.create_folder, folder)

        remote_validity, exists = await self._call(self.session.select_folder, folder)
        local_validity, last_uid = await self._call(self.maildir.get_cursor, folder)

        if local_validity and local_validity != remote_validity:
            raise ConsistencyError(
                f"[{self.account_name}] UIDVALIDITY for {folder} changed "
                f"from {local_validity} to {remote_validity}; full resync is not supported"
            )

        if exists == 0:
            logger.debug(f"[{self.account_name}] {folder} is empty")
            return 0

        uids = await self._call(self.session.fetch_new_uids, folder, last_uid)
        if not uids:
            return 0

        total = len(uids)
        logger.info(f"[{self.account_name}] {total} new messages in {folder}")
        for done, uid in enumerate(uids, start=1):
            flags, body = await self._call(self.session.fetch_body, folder, uid)
            info = MessageInfo(
                folder=folder,
                uid_validity=remote_validity,
                uid=uid,
                flags=flags,
            )
            stored = await self._call(self.maildir.add_message, info, body)
            self.result.add_download(folder)
            logger.debug(f"[{self.account_name}] Stored {folder}/{uid} at {stored.path}")
            if done % PROGRESS_INTERVAL == 0 or done == total:
                logger.info(f"[{self.account_name}] {folder}: {done}/{total} downloaded")

        return total
