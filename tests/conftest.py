"""Shared test fixtures."""

from unittest.mock import MagicMock, patch

import pytest
from imapclient import IMAPClient

from imapsync.config import AccountConfig, FolderFilter
from imapsync.imap_client import ImapSession
from imapsync.maildir import Maildir


class FakeImapClient:
    """In-memory stand-in for IMAPClient with UIDPLUS support.

    Folders map to (uid_validity, {uid: (flags, body)}).
    """

    def __init__(self, folders=None, uidplus=True):
        self.folders = folders or {}
        self.uidplus = uidplus
        self.selected = None
        self.readonly = None
        self.appended = []
        self.fetch_calls = []
        self.search_calls = []
        self.logged_out = False

    def add_folder(self, name, uid_validity, messages=None):
        self.folders[name] = (uid_validity, dict(messages or {}))

    def list_folders(self):
        return [((b"\\HasNoChildren",), b"/", name) for name in self.folders]

    def select_folder(self, folder, readonly=False):
        uid_validity, messages = self.folders[folder]
        self.selected = folder
        self.readonly = readonly
        return {b"UIDVALIDITY": uid_validity, b"EXISTS": len(messages)}

    def search(self, criteria):
        self.search_calls.append(criteria)
        _, stored = self.folders[self.selected]
        key, uid_range = criteria
        assert key == "UID"
        low, high = (int(x) for x in uid_range.split(":"))
        return [uid for uid in sorted(stored) if low <= uid <= high]

    def fetch(self, messages, data):
        # IMAPClient takes message ids, never range strings, and keys the
        # result by UID without a UID entry.
        messages = [int(m) for m in messages]
        self.fetch_calls.append((messages, data))
        _, stored = self.folders[self.selected]
        seqs = {uid: seq for seq, uid in enumerate(sorted(stored), start=1)}

        response = {}
        for uid in messages:
            if uid not in stored:
                continue
            flags, body = stored[uid]
            item = {b"SEQ": seqs[uid]}
            if "FLAGS" in data:
                item[b"FLAGS"] = tuple(f.encode() for f in flags)
            if "BODY.PEEK[]" in data:
                item[b"BODY[]"] = body
            response[uid] = item
        return response

    def has_capability(self, capability):
        return capability == "UIDPLUS" and self.uidplus

    def append(self, folder, msg, flags=(), msg_time=None):
        uid_validity, stored = self.folders[folder]
        uid = max(stored, default=0) + 1
        stored[uid] = (list(flags), msg)
        self.appended.append((folder, msg, tuple(flags)))
        return f"[APPENDUID {uid_validity} {uid}] APPEND completed".encode()

    def close_folder(self):
        self.selected = None

    def logout(self):
        self.logged_out = True


def stub_transport(capabilities=b"IMAP4rev1 UIDPLUS"):
    """Create a stand-in for the imaplib connection under a real IMAPClient.

    Tests put raw untagged server data in ``transport.responses`` under the
    command name, in the form imaplib hands it to IMAPClient.
    """
    transport = MagicMock()
    transport.state = "AUTH"
    transport.untagged_responses = {"CAPABILITY": [capabilities]}
    transport.responses = {}
    transport._new_tag.return_value = b"A001"
    transport._command.return_value = b"A001"
    transport._command_complete.return_value = ("OK", [b"completed"])
    transport._simple_command.return_value = ("OK", [b"completed"])

    def untagged_response(typ, data, name):
        return typ, transport.responses.pop(name, [None])

    transport._untagged_response.side_effect = untagged_response
    transport.select.return_value = ("OK", [b"0"])
    transport.close.return_value = ("OK", [b"CLOSE completed"])
    transport.append.return_value = ("OK", [b"APPEND completed"])
    transport.logout.return_value = ("BYE", [b"logging out"])
    return transport


@pytest.fixture
def account(tmp_path):
    """Create a test account configuration."""
    return AccountConfig(
        name="test",
        maildir=str(tmp_path / "Mail"),
        server="imap.example.com",
        username="test@example.com",
        password="testpass",
        use_tls=True,
        folders=FolderFilter(),
    )


@pytest.fixture
def maildir(tmp_path):
    """Create an open Maildir store in a temporary directory."""
    root = tmp_path / "Mail"
    root.mkdir()
    with Maildir(root) as md:
        yield md


@pytest.fixture
def fake_server():
    """Create an empty fake IMAP server."""
    return FakeImapClient()


@pytest.fixture
def session(account, fake_server):
    """Create an ImapSession backed by the fake server."""
    return ImapSession(account, fake_server)


@pytest.fixture
def mock_imap_client():
    """Patch IMAPClient with a MagicMock."""
    with patch("imapsync.imap_client.IMAPClient") as mock_class:
        mock_instance = MagicMock()
        mock_class.return_value = mock_instance
        yield mock_class


@pytest.fixture
def transport():
    """Create a stubbed imaplib connection."""
    return stub_transport()


@pytest.fixture
def real_session(account, transport):
    """Create an ImapSession over a real IMAPClient and a stubbed transport."""
    with patch.object(IMAPClient, "_create_IMAP4", return_value=transport):
        client = IMAPClient(account.server, port=993, ssl=True)
    return ImapSession(account, client)
