"""IMAP session for one account."""

from __future__ import annotations

import logging
import re
import ssl
import subprocess
from datetime import datetime, timezone
from typing import BinaryIO

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from .config import AccountConfig
from .errors import (
    AuthenticationError,
    ConfigError,
    ProtocolError,
    RemoteConnectionError,
)
from .flags import from_imap, to_imap

logger = logging.getLogger("imapsync.imap")

# Highest possible UID. Searching "N:*" always matches at least the last
# message, even when its UID is below N, so ranges are closed explicitly.
MAX_UID = 4294967295

_APPENDUID_RE = re.compile(rb"APPENDUID\s+(\d+)\s+(\d+)", re.IGNORECASE)


def resolve_password(account: AccountConfig) -> str:
    """Return the account password, running password_cmd if configured.

    The command runs through ``sh -c``; trailing newlines are stripped.
    """
    if not account.password_cmd:
        return account.password

    try:
        result = subprocess.run(
            ["sh", "-c", account.password_cmd],
            capture_output=True,
            check=True,
            text=True,
        )
    except (OSError, subprocess.CalledProcessError) as e:
        raise ConfigError(f"[{account.name}] password command failed: {e}") from e

    return result.stdout.rstrip("\r\n")


class ImapSession:
    """One authenticated IMAP connection bound to one account.

    All methods block; the synchronizer runs them in an executor.

    Example:
        session = ImapSession.connect(account)
        try:
            folders = session.list_folders()
        finally:
            session.close()
    """

    def __init__(self, account: AccountConfig, client: IMAPClient):
        self.account = account
        self._client = client
        self._selected: str | None = None
        self._uid_validity = 0
        self._exists = 0

    @classmethod
    def connect(cls, account: AccountConfig) -> ImapSession:
        """Open, secure and authenticate a connection for ``account``.

        Raises:
            ConfigError: Server, username or password missing.
            RemoteConnectionError: The server could not be reached.
            AuthenticationError: Login was rejected.
        """
        password = resolve_password(account)

        if not account.server:
            raise ConfigError(f"[{account.name}] imap server address not configured")
        if not account.username:
            raise ConfigError(f"[{account.name}] imap username not configured")
        if not password:
            raise ConfigError(f"[{account.name}] imap password not configured")

        port = account.effective_port()
        ssl_context = ssl.create_default_context()
        logger.info(f"[{account.name}] Connecting to {account.server}:{port}")

        try:
            client = IMAPClient(
                account.server,
                port=port,
                ssl=account.use_tls,
                ssl_context=ssl_context,
            )
        except (OSError, IMAPClientError) as e:
            raise RemoteConnectionError(
                f"[{account.name}] cannot connect to {account.server}:{port}: {e}"
            ) from e

        try:
            if account.use_starttls:
                client.starttls(ssl_context)
            client.login(account.username, password)
        except LoginError as e:
            _shutdown_quietly(client)
            raise AuthenticationError(
                f"[{account.name}] login failed for {account.username}: {e}"
            ) from e
        except (OSError, IMAPClientError) as e:
            _shutdown_quietly(client)
            raise RemoteConnectionError(
                f"[{account.name}] cannot set up session with {account.server}: {e}"
            ) from e

        return cls(account, client)

    @property
    def client(self) -> IMAPClient:
        return self._client

    def close(self) -> None:
        """Close the selected folder and log out.

        Both steps are attempted; the first failure is raised.
        """
        first_error: Exception | None = None

        if self._selected is not None:
            try:
                self._client.close_folder()
            except (OSError, IMAPClientError) as e:
                first_error = e
            self._selected = None

        try:
            self._client.logout()
        except (OSError, IMAPClientError) as e:
            if first_error is None:
                first_error = e

        if first_error is not None:
            raise ProtocolError(
                f"[{self.account.name}] error while closing session: {first_error}"
            ) from first_error

    def list_folders(self) -> list[str]:
        """List server folders after applying the include/exclude filter.

        Raises:
            ConfigError: An explicitly included folder is not on the server.
        """
        include = self.account.folders.include
        exclude = set(self.account.folders.exclude)
        seen_included = dict.fromkeys(include, False)

        try:
            listing = self._client.list_folders()
        except (OSError, IMAPClientError) as e:
            raise ProtocolError(f"[{self.account.name}] cannot list folders: {e}") from e

        names = []
        for _flags, _delimiter, name in listing:
            if isinstance(name, bytes):
                name = name.decode("utf-8", errors="replace")
            if name in exclude:
                continue
            if include:
                if name not in seen_included:
                    continue
                seen_included[name] = True
            names.append(name)

        missing = [folder for folder, seen in seen_included.items() if not seen]
        if missing:
            raise ConfigError(
                f"[{self.account.name}] folder {', '.join(missing)} not found on server"
            )

        return names

    def select_folder(self, folder: str) -> tuple[int, int]:
        """Select ``folder`` read-only.

        Returns:
            (UIDVALIDITY, number of messages in the folder)
        """
        try:
            response = self._client.select_folder(folder, readonly=True)
        except (OSError, IMAPClientError) as e:
            raise ProtocolError(f"[{self.account.name}] cannot select {folder}: {e}") from e

        self._selected = folder
        self._uid_validity = int(response.get(b"UIDVALIDITY", 0) or 0)
        self._exists = int(response.get(b"EXISTS", 0) or 0)
        return self._uid_validity, self._exists

    def _ensure_selected(self, folder: str) -> None:
        if self._selected != folder:
            self.select_folder(folder)

    def fetch_new_uids(self, folder: str, since_uid: int) -> list[int]:
        """Return the UIDs in ``folder`` greater than ``since_uid``, ascending.

        Raises:
            ProtocolError: The search failed or its response was malformed.
        """
        self._ensure_selected(folder)
        if since_uid >= MAX_UID:
            return []

        try:
            # UID SEARCH, since the client runs with use_uid enabled
            response = self._client.search(["UID", f"{since_uid + 1}:{MAX_UID}"])
        except (OSError, IMAPClientError, ValueError) as e:
            raise ProtocolError(
                f"[{self.account.name}] cannot list new messages in {folder}: {e}"
            ) from e

        return sorted(int(uid) for uid in response if uid > since_uid)

    def fetch_body(self, folder: str, uid: int) -> tuple[list[str], bytes]:
        """Fetch a full message without setting \\Seen.

        Returns:
            (Maildir flag letters, raw message bytes)
        """
        self._ensure_selected(folder)
        try:
            response = self._client.fetch([uid], ["BODY.PEEK[]", "FLAGS"])
        except (OSError, IMAPClientError) as e:
            raise ProtocolError(
                f"[{self.account.name}] cannot fetch {folder}/{uid}: {e}"
            ) from e

        data = response.get(uid)
        if data is None:
            raise ProtocolError(f"[{self.account.name}] server didn't return message {folder}/{uid}")

        body = data.get(b"BODY[]")
        if body is None:
            raise ProtocolError(
                f"[{self.account.name}] server didn't return message body for {folder}/{uid}"
            )

        return from_imap(data.get(b"FLAGS", ())), body

    def upload(
        self,
        folder: str,
        flags: list[str],
        message: bytes | BinaryIO,
    ) -> tuple[int, int]:
        """Append a message to ``folder`` and return the UID it was given.

        Requires the UIDPLUS extension, which makes the server report the
        new UID in its APPEND response.

        Returns:
            (UIDVALIDITY, UID) of the stored message.
        """
        if not self._client.has_capability("UIDPLUS"):
            raise ProtocolError(
                f"[{self.account.name}] server does not support UIDPLUS, "
                "which is required for pushing new messages to the server"
            )

        if not isinstance(message, (bytes, bytearray)):
            message = message.read()

        try:
            response = self._client.append(
                folder,
                message,
                flags=to_imap(flags),
                msg_time=datetime.now(timezone.utc),
            )
        except (OSError, IMAPClientError) as e:
            raise ProtocolError(f"[{self.account.name}] cannot append to {folder}: {e}") from e

        if isinstance(response, str):
            response = response.encode("ascii", errors="replace")
        match = _APPENDUID_RE.search(response or b"")
        uid_validity, uid = (int(match.group(1)), int(match.group(2))) if match else (0, 0)

        # The server is not forced to return the UID, but we need it to
        # track the message.
        if uid_validity == 0 or uid == 0:
            raise ProtocolError(
                f"[{self.account.name}] server did not return UID for message added to {folder}"
            )

        return uid_validity, uid


def _shutdown_quietly(client: IMAPClient) -> None:
    try:
        client.shutdown()
    except (OSError, IMAPClientError) as e:
        logger.debug(f"Error shutting down connection: {e}")
