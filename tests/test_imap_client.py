"""Tests for the aioimaplib session: response parsing and command handling."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import keyring
import pytest
from aioimaplib import aioimaplib

from mailsync.imap import client as client_module
from mailsync.imap.client import (
    IMAPSession,
    parse_flags_response,
    parse_list_line,
    parse_message_response,
    parse_quota_response,
    parse_select_response,
)
from mailsync.imap.session import (
    ChunkDownloadError,
    FolderLockError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPError,
    QuotaError,
    QuotaUsage,
    RangeFetchError,
)

OK = aioimaplib.Response


# =============================================================================
# Response parsing
# =============================================================================

class TestParseListLine:
    def test_simple_folder(self):
        folder = parse_list_line(b'(\\HasNoChildren) "/" INBOX')
        assert folder.path == "INBOX"
        assert folder.delimiter == "/"
        assert folder.special_use is None

    def test_quoted_folder_with_special_use(self):
        folder = parse_list_line(b'(\\HasNoChildren \\Sent) "." "INBOX.Sent Items"')
        assert folder.path == "INBOX.Sent Items"
        assert folder.name == "Sent Items"
        assert folder.delimiter == "."
        assert folder.special_use == "\\Sent"

    def test_nil_delimiter(self):
        assert parse_list_line(b'(\\HasNoChildren) NIL Notes').delimiter == "/"

    @pytest.mark.parametrize(
        "line",
        [
            b'(\\Noselect \\HasChildren) "/" "[Gmail]"',
            b'(\\NonExistent) "/" Gone',
            b"LIST completed",
            b"",
        ],
    )
    def test_skipped_lines(self, line):
        assert parse_list_line(line) is None


def test_parse_select_response():
    lines = [
        b"FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)",
        b"172 EXISTS",
        b"1 RECENT",
        b"OK [UIDVALIDITY 3857529045] UIDs valid",
        b"OK [UIDNEXT 4392] Predicted next UID",
        b"[READ-WRITE] SELECT completed",
    ]
    assert parse_select_response(lines) == {
        "EXISTS": 172,
        "RECENT": 1,
        "UIDVALIDITY": 3857529045,
        "UIDNEXT": 4392,
    }


class TestParseFetch:
    def test_flags_response(self):
        lines = [
            b"1 FETCH (UID 101 FLAGS (\\Seen \\Flagged))",
            b"2 FETCH (FLAGS () UID 102)",
            b"FETCH completed",
        ]

        items = parse_flags_response(lines)

        assert [item.uid for item in items] == [101, 102]
        assert items[0].flags == frozenset({"\\Seen", "\\Flagged"})
        assert items[1].flags == frozenset()

    def test_message_response_with_literals(self):
        lines = [
            b"1 FETCH (UID 101 FLAGS (\\Seen) BODY[] {12}",
            bytearray(b"Subject: a\r\n"),
            b")",
            b"2 FETCH (BODY[] {12}",
            bytearray(b"Subject: b\r\n"),
            b" UID 102 FLAGS ())",
            b"3 FETCH (UID 103 FLAGS () BODY[] NIL)",
            b"UID FETCH completed",
        ]

        items = parse_message_response(lines)

        assert [item.uid for item in items] == [101, 102, 103]
        assert items[0].source == b"Subject: a\r\n"
        assert items[0].flags == frozenset({"\\Seen"})
        assert items[1].source == b"Subject: b\r\n"
        assert items[2].source is None
        assert not items[2].has_body


class TestParseQuota:
    @pytest.mark.parametrize(
        "line",
        [b'"" (STORAGE 10 512)', b'QUOTA "" (STORAGE 10 512)', b"ROOT (MESSAGE 5 100 STORAGE 10 512)"],
    )
    def test_storage_resource(self, line):
        assert parse_quota_response([line, b"GETQUOTAROOT completed"]) == QuotaUsage(10, 512, 1024)

    def test_no_storage_resource(self):
        assert parse_quota_response([b'"" (MESSAGE 5 100)']) is None


# =============================================================================
# Session
# =============================================================================

@pytest.fixture
def imap_client():
    client = MagicMock()
    client.protocol.capabilities = ["IMAP4rev1", "QUOTA"]
    client.wait_hello_from_server = AsyncMock()
    client.login = AsyncMock(return_value=OK("OK", [b"LOGIN completed"]))
    client.logout = AsyncMock(return_value=OK("OK", []))
    client.select = AsyncMock(return_value=OK("OK", [b"3 EXISTS", b"OK [UIDNEXT 10] Predicted"]))
    client.fetch = AsyncMock(return_value=OK("OK", [b"1 FETCH (UID 7 FLAGS ())"]))
    client.uid = AsyncMock(return_value=OK("OK", []))
    client.expunge = AsyncMock(return_value=OK("OK", []))
    return client


@pytest.fixture
def session(sample_account, imap_client):
    """A session that is already connected to the mocked client."""
    imap_session = IMAPSession(sample_account, password="secret")
    imap_session._client = imap_client
    imap_session._capabilities = {"IMAP4REV1", "QUOTA"}
    return imap_session


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_and_login(self, sample_account, imap_client, monkeypatch):
        factory = MagicMock(return_value=imap_client)
        monkeypatch.setattr(client_module.aioimaplib, "IMAP4_SSL", factory)
        session = IMAPSession(sample_account, password="secret")

        await session.connect()

        factory.assert_called_once_with(host="imap.example.com", port=993, timeout=IMAPSession.TIMEOUT)
        imap_client.login.assert_awaited_once_with("test@example.com", "secret")
        assert session.is_connected
        assert session.has_capability("quota")

    @pytest.mark.asyncio
    async def test_missing_keyring_password(self, sample_account, imap_client, monkeypatch):
        monkeypatch.setattr(client_module.aioimaplib, "IMAP4_SSL", MagicMock(return_value=imap_client))
        monkeypatch.setattr(keyring, "get_password", lambda service, user: None)
        session = IMAPSession(sample_account)

        with pytest.raises(IMAPAuthenticationError, match="keyring set mailsync:test"):
            await session.connect()

        assert not session.is_connected
        imap_client.protocol.transport.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_rejected_login(self, sample_account, imap_client, monkeypatch):
        monkeypatch.setattr(client_module.aioimaplib, "IMAP4_SSL", MagicMock(return_value=imap_client))
        imap_client.login.return_value = OK("NO", [b"[AUTHENTICATIONFAILED] Invalid credentials"])
        session = IMAPSession(sample_account, password="wrong")

        with pytest.raises(IMAPAuthenticationError):
            await session.connect()

    @pytest.mark.asyncio
    async def test_network_error(self, sample_account, imap_client, monkeypatch):
        monkeypatch.setattr(client_module.aioimaplib, "IMAP4_SSL", MagicMock(return_value=imap_client))
        imap_client.wait_hello_from_server.side_effect = ConnectionRefusedError("refused")
        session = IMAPSession(sample_account, password="secret")

        with pytest.raises(IMAPConnectionError, match="refused"):
            await session.connect()

    @pytest.mark.asyncio
    async def test_starttls_required(self, sample_account, imap_client, monkeypatch):
        sample_account.imap_security = "starttls"
        monkeypatch.setattr(client_module.aioimaplib, "IMAP4", MagicMock(return_value=imap_client))
        imap_client.has_capability = MagicMock(return_value=False)
        session = IMAPSession(sample_account, password="secret")

        with pytest.raises(IMAPConnectionError, match="STARTTLS"):
            await session.connect()

    @pytest.mark.asyncio
    async def test_logout_failure_still_disconnects(self, session, imap_client):
        imap_client.logout.side_effect = asyncio.TimeoutError()

        with pytest.raises(IMAPError):
            await session.logout()

        assert not session.is_connected


class TestLockFolder:
    @pytest.mark.asyncio
    async def test_lock_reports_exists(self, session, imap_client):
        async with session.lock_folder("Sent Items") as lock:
            assert lock.exists == 3
            assert lock.uidnext == 10
            assert session.selected_folder == "Sent Items"

        assert session.selected_folder is None
        imap_client.select.assert_awaited_once_with('"Sent Items"')

    @pytest.mark.asyncio
    async def test_missing_folder(self, session, imap_client):
        imap_client.select.return_value = OK("NO", [b"[NONEXISTENT] Unknown Mailbox"])

        with pytest.raises(FolderLockError) as excinfo:
            async with session.lock_folder("Old"):
                pass

        assert excinfo.value.missing

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self, session):
        with pytest.raises(RuntimeError):
            async with session.lock_folder("INBOX"):
                raise RuntimeError("boom")

        assert session.selected_folder is None
        async with session.lock_folder("INBOX") as lock:
            assert lock.path == "INBOX"

    @pytest.mark.asyncio
    async def test_timeout(self, session, imap_client):
        imap_client.select.side_effect = asyncio.TimeoutError()

        with pytest.raises(FolderLockError):
            async with session.lock_folder("INBOX"):
                pass


class TestFetch:
    @pytest.mark.asyncio
    async def test_identifiers_and_flags(self, session, imap_client):
        items = [item async for item in session.fetch_identifiers_and_flags("1:5000")]

        assert [item.uid for item in items] == [7]
        imap_client.fetch.assert_awaited_once_with("1:5000", "(UID FLAGS)")

    @pytest.mark.asyncio
    async def test_range_failure(self, session, imap_client):
        imap_client.fetch.return_value = OK("BAD", [b"Error in IMAP command"])

        with pytest.raises(RangeFetchError):
            [item async for item in session.fetch_identifiers_and_flags("1:10")]

    @pytest.mark.asyncio
    async def test_full_messages_use_peek(self, session, imap_client):
        imap_client.uid.return_value = OK("OK", [
            b"1 FETCH (UID 5 FLAGS () BODY[] {9}",
            bytearray(b"Subject:x"),
            b")",
        ])

        items = [item async for item in session.fetch_full_messages([5, 6])]

        imap_client.uid.assert_awaited_once_with("fetch", "5,6", "(UID FLAGS BODY.PEEK[])")
        assert items[0].uid == 5
        assert items[0].source == b"Subject:x"

    @pytest.mark.asyncio
    async def test_chunk_failure(self, session, imap_client):
        imap_client.uid.side_effect = aioimaplib.Abort("connection lost")

        with pytest.raises(ChunkDownloadError):
            [item async for item in session.fetch_full_messages([1])]


class TestQuotaAndMutations:
    @pytest.mark.asyncio
    async def test_quota_requires_capability(self, session):
        session._capabilities = {"IMAP4REV1"}

        with pytest.raises(QuotaError):
            await session.query_quota("INBOX")

    @pytest.mark.asyncio
    async def test_set_flags_requires_lock(self, session):
        with pytest.raises(IMAPError):
            await session.set_flags([1], ["\\Seen"])

    @pytest.mark.asyncio
    async def test_set_and_remove_flags(self, session, imap_client):
        async with session.lock_folder("INBOX"):
            await session.set_flags([1, 2], ["\\Seen"])
            await session.set_flags([3], ["\\Flagged"], add=False)

        assert imap_client.uid.await_args_list[0].args == ("store", "1,2", "+FLAGS (\\Seen)")
        assert imap_client.uid.await_args_list[1].args == ("store", "3", "-FLAGS (\\Flagged)")

    @pytest.mark.asyncio
    async def test_delete_in_batches_then_expunge(self, session, imap_client):
        async with session.lock_folder("INBOX"):
            await session.delete_messages(list(range(1, 151)))

        assert imap_client.uid.await_count == 2
        imap_client.expunge.assert_awaited_once()
