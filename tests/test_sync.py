"""Tests for the push and pull passes."""

import logging
import os

import pytest

from imapsync.errors import ConsistencyError, ProtocolError, StorageError
from imapsync.maildir import SYNC_MARKER, is_synced
from imapsync.sync import Synchronizer


def cur_files(maildir, folder):
    return sorted(os.listdir(os.path.join(maildir.folder_path(folder), "cur")))


def deliver_local(maildir, folder, name, content=b"local message"):
    maildir.create_folder(folder)
    path = os.path.join(maildir.folder_path(folder), "cur", name)
    with open(path, "wb") as f:
        f.write(content)
    return path


@pytest.fixture
def sync(session, maildir):
    return Synchronizer(session, maildir)


class TestPull:
    @pytest.mark.asyncio
    async def test_pulls_new_folder(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 99, {
            1: (["\\Seen"], b"one"),
            2: ([], b"two"),
            3: (["\\Flagged"], b"three"),
        })

        assert await sync.pull() == 3

        names = cur_files(maildir, "INBOX")
        assert len(names) == 3
        assert all(is_synced(name) for name in names)
        stored = {}
        for name in names:
            with open(os.path.join(maildir.folder_path("INBOX"), "cur", name), "rb") as f:
                stored[name.split(",U=")[1]] = f.read()
        assert stored == {"1:2,S": b"one", "2:2,": b"two", "3:2,F": b"three"}
        assert maildir.get_cursor("INBOX") == (99, 3)

    @pytest.mark.asyncio
    async def test_fetches_in_ascending_order(self, sync, fake_server):
        fake_server.add_folder("INBOX", 99, {3: ([], b"c"), 1: ([], b"a"), 2: ([], b"b")})

        await sync.pull()

        body_fetches = [call[0] for call in fake_server.fetch_calls if "BODY.PEEK[]" in call[1]]
        assert body_fetches == [[1], [2], [3]]

    @pytest.mark.asyncio
    async def test_second_pull_is_empty(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 99, {1: ([], b"a"), 2: ([], b"b")})

        assert await sync.pull() == 2
        assert await sync.pull() == 0
        assert len(cur_files(maildir, "INBOX")) == 2

    @pytest.mark.asyncio
    async def test_cursor_only_moves_forward(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 99, {1: ([], b"a")})
        cursors = []

        await sync.pull()
        cursors.append(maildir.get_cursor("INBOX")[1])
        fake_server.folders["INBOX"][1][2] = ([], b"b")
        fake_server.folders["INBOX"][1][5] = ([], b"c")
        await sync.pull()
        cursors.append(maildir.get_cursor("INBOX")[1])
        await sync.pull()
        cursors.append(maildir.get_cursor("INBOX")[1])

        assert cursors == [1, 5, 5]

    @pytest.mark.asyncio
    async def test_validity_mismatch(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 7, {1: ([], b"a")})
        maildir.create_folder("INBOX")
        with open(maildir.cursor_path("INBOX"), "w") as f:
            f.write("5\n0\n")

        with pytest.raises(ConsistencyError, match="UIDVALIDITY"):
            await sync.pull()

        assert cur_files(maildir, "INBOX") == []
        assert maildir.get_cursor("INBOX") == (5, 0)

    @pytest.mark.asyncio
    async def test_empty_folder_creates_local_folder_only(self, sync, maildir, fake_server):
        fake_server.add_folder("Drafts", 3)

        assert await sync.pull() == 0

        assert cur_files(maildir, "Drafts") == []
        assert maildir.get_cursor("Drafts") == (0, 0)
        assert fake_server.fetch_calls == []
        assert fake_server.search_calls == []

    @pytest.mark.asyncio
    async def test_fetch_error_stops_pull(self, sync, maildir, fake_server, monkeypatch):
        fake_server.add_folder("INBOX", 99, {1: ([], b"a"), 2: ([], b"b")})
        original_fetch_body = sync.session.fetch_body

        def flaky_fetch_body(folder, uid):
            if uid == 2:
                raise ProtocolError("server didn't return message")
            return original_fetch_body(folder, uid)

        monkeypatch.setattr(sync.session, "fetch_body", flaky_fetch_body)

        with pytest.raises(ProtocolError):
            await sync.pull()

        assert len(cur_files(maildir, "INBOX")) == 1
        assert maildir.get_cursor("INBOX") == (99, 1)

    @pytest.mark.asyncio
    async def test_logs_progress(self, sync, fake_server, caplog):
        fake_server.add_folder("INBOX", 99, {uid: ([], b"m") for uid in range(1, 151)})

        with caplog.at_level(logging.INFO, logger="imapsync.sync"):
            await sync.pull()

        progress = [r.getMessage() for r in caplog.records if "downloaded" in r.getMessage()]
        assert progress == ["[test] INBOX: 100/150 downloaded", "[test] INBOX: 150/150 downloaded"]


class TestPush:
    @pytest.mark.asyncio
    async def test_uploads_and_renames(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 42, {6: ([], b"older")})
        path = deliver_local(maildir, "INBOX", "1700000000.local.host:2,", b"hello")

        assert await sync.push() == 1

        assert fake_server.appended == [("INBOX", b"hello", ())]
        names = cur_files(maildir, "INBOX")
        assert len(names) == 1
        assert not os.path.exists(path)
        assert f"S{SYNC_MARKER}" in names[0]
        assert names[0].endswith(",U=7:2,")
        assert maildir.get_cursor("INBOX") == (42, 7)

    @pytest.mark.asyncio
    async def test_second_push_finds_nothing(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 42, {6: ([], b"older")})
        deliver_local(maildir, "INBOX", "1700000000.local.host:2,")

        await sync.push()
        assert await sync.push() == 0
        assert len(fake_server.appended) == 1

    @pytest.mark.asyncio
    async def test_flags_are_uploaded(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 42)
        deliver_local(maildir, "INBOX", "1700000000.local.host:2,RS")

        await sync.push()

        assert fake_server.appended[0][2] == ("\\Answered", "\\Seen")
        assert cur_files(maildir, "INBOX")[0].endswith(",U=1:2,RS")

    @pytest.mark.asyncio
    async def test_many_messages_stream_through_queue(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 42)
        for i in range(250):
            deliver_local(maildir, "INBOX", f"1700000000.local{i}.host:2,S")

        assert await sync.push() == 250
        assert maildir.get_cursor("INBOX") == (42, 250)
        assert all(is_synced(name) for name in cur_files(maildir, "INBOX"))

    @pytest.mark.asyncio
    async def test_upload_failure_keeps_local_file(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 42)
        fake_server.uidplus = False
        path = deliver_local(maildir, "INBOX", "1700000000.local.host:2,")

        with pytest.raises(ProtocolError, match="UIDPLUS"):
            await sync.push()

        assert os.path.exists(path)
        assert maildir.get_cursor("INBOX") == (0, 0)

    @pytest.mark.asyncio
    async def test_scan_error_surfaces(self, session, tmp_path):
        from imapsync.maildir import Maildir

        with Maildir(tmp_path / "does-not-exist") as md:
            with pytest.raises(StorageError):
                await Synchronizer(session, md).push()

    @pytest.mark.asyncio
    async def test_validity_mismatch_blocks_upload(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 7)
        path = deliver_local(maildir, "INBOX", "1700000000.local.host:2,")
        with open(maildir.cursor_path("INBOX"), "w") as f:
            f.write("5\n10\n")

        with pytest.raises(ConsistencyError, match="UIDVALIDITY"):
            await sync.run()

        assert fake_server.appended == []
        assert os.path.exists(path)
        assert maildir.get_cursor("INBOX") == (5, 10)

    @pytest.mark.asyncio
    async def test_validity_checked_once_per_folder(self, sync, maildir, fake_server, monkeypatch):
        fake_server.add_folder("INBOX", 42)
        for i in range(3):
            deliver_local(maildir, "INBOX", f"1700000000.local{i}.host:2,")
        selected = []
        original_select = fake_server.select_folder

        def counting_select(folder, readonly=False):
            selected.append(folder)
            return original_select(folder, readonly)

        monkeypatch.setattr(fake_server, "select_folder", counting_select)

        assert await sync.push() == 3
        assert selected == ["INBOX"]

    @pytest.mark.asyncio
    async def test_failed_push_closes_scan(self, sync, maildir, fake_server, monkeypatch):
        fake_server.add_folder("INBOX", 42)
        fake_server.uidplus = False
        for i in range(150):
            deliver_local(maildir, "INBOX", f"1700000000.local{i}.host:2,")
        closed = []
        original_scan = maildir.scan

        def tracking_scan():
            try:
                yield from original_scan()
            finally:
                closed.append(True)

        monkeypatch.setattr(maildir, "scan", tracking_scan)

        with pytest.raises(ProtocolError):
            await sync.push()

        assert closed == [True]


class TestRun:
    @pytest.mark.asyncio
    async def test_push_then_pull(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 42, {1: ([], b"remote")})
        maildir.create_folder("INBOX")
        with open(maildir.cursor_path("INBOX"), "w") as f:
            f.write("42\n1\n")
        deliver_local(maildir, "INBOX", "1700000000.local.host:2,S", b"local")

        result = await sync.run()

        assert result.uploaded == 1
        assert result.downloaded == 0
        assert result.uploaded_by_folder == {"INBOX": 1}
        assert maildir.get_cursor("INBOX") == (42, 2)

    @pytest.mark.asyncio
    async def test_push_failure_skips_pull(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 42, {1: ([], b"remote")})
        fake_server.uidplus = False
        deliver_local(maildir, "INBOX", "1700000000.local.host:2,")

        with pytest.raises(ProtocolError):
            await sync.run()

        assert fake_server.fetch_calls == []
        assert fake_server.search_calls == []

    @pytest.mark.asyncio
    async def test_pull_only(self, sync, maildir, fake_server):
        fake_server.add_folder("INBOX", 42, {1: ([], b"remote")})
        deliver_local(maildir, "INBOX", "1700000000.local.host:2,")

        result = await sync.run(push=False)

        assert result.uploaded == 0
        assert result.downloaded == 1
        assert fake_server.appended == []
