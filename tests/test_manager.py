"""End-to-end tests for the sync orchestrator against an in-memory server."""

import pytest

from fakes import FakeMail, FakeSession
from mailsync.config import SyncConfig
from mailsync.core import FolderDescriptor
from mailsync.imap.session import (
    FolderLockError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPError,
    QuotaUsage,
)
from mailsync.sync.manager import SyncManager, SyncState


def inbox(*mails, **folders):
    return {"INBOX": list(mails), **folders}


async def run_sync(session, repo, account, **kwargs):
    return await SyncManager(session, repo, account, **kwargs).sync_account()


# =============================================================================
# Scenarios
# =============================================================================

class TestScenarios:
    @pytest.mark.asyncio
    async def test_empty_folder(self, repo, account):
        session = FakeSession(mailboxes=inbox())

        result = await run_sync(session, repo, account)

        assert result.success
        assert result.new_messages == 0
        assert session.calls_to("scan") == []
        assert session.calls_to("unlock") == ["INBOX"]

    @pytest.mark.asyncio
    async def test_single_read_message(self, repo, account):
        session = FakeSession(mailboxes=inbox(FakeMail.make(42, "\\Seen")))

        result = await run_sync(session, repo, account)

        assert result.success
        assert result.new_messages == 1
        messages = await repo.get_messages(account.id, "Inbox")
        assert len(messages) == 1
        assert messages[0].uid == 42
        assert messages[0].is_read

    @pytest.mark.asyncio
    async def test_150_messages_50_read(self, repo, account):
        mails = [
            FakeMail.make(uid, "\\Seen") if uid <= 50 else FakeMail.make(uid)
            for uid in range(1, 151)
        ]
        session = FakeSession(mailboxes=inbox(*mails))
        unread = []

        result = await run_sync(session, repo, account, unread_callback=unread.append)

        assert result.new_messages == 150
        assert await repo.get_message_count(account.id, "Inbox") == 150
        assert await repo.get_unread_count(account.id) == 100
        assert result.unread_count == 100
        assert unread == [100]
        # 150 UIDs in chunks of 50
        assert len(session.calls_to("download")) == 3

    @pytest.mark.asyncio
    async def test_sparse_uids(self, repo, account):
        uids = [1, 2, 5, 10, 50, 100, 500, 1000, 5000, 10000]
        session = FakeSession(mailboxes=inbox(*(FakeMail.make(uid) for uid in uids)))

        result = await run_sync(session, repo, account)

        assert result.new_messages == 10
        assert await repo.get_local_uids(account.id, "Inbox") == uids

    @pytest.mark.asyncio
    async def test_window_boundary(self, repo, account):
        mails = [FakeMail(uid=uid, source=b"Subject: x\r\n\r\nbody") for uid in range(1, 102)]
        session = FakeSession(mailboxes=inbox(*mails))

        result = await run_sync(session, repo, account, config=SyncConfig(scan_window_size=100))

        assert session.calls_to("scan") == ["1:100", "101:101"]
        assert result.new_messages == 101
        assert await repo.get_message_count(account.id) == 101

    @pytest.mark.asyncio
    async def test_multiple_folders_use_canonical_names(self, repo, account):
        session = FakeSession(
            mailboxes={
                "INBOX": [FakeMail.make(1)],
                "INBOX.Archive": [FakeMail.make(1)],
                "Gesendet": [FakeMail.make(1, "\\Seen")],
            },
            descriptors=[
                FolderDescriptor(path="INBOX", delimiter="."),
                FolderDescriptor(path="INBOX.Archive", delimiter="."),
                FolderDescriptor(path="Gesendet", delimiter="."),
            ],
        )

        result = await run_sync(session, repo, account)

        assert result.new_messages == 3
        for folder in ("Inbox", "Inbox/Archive", "Sent"):
            assert await repo.get_local_uids(account.id, folder) == [1]


# =============================================================================
# Idempotence and reconciliation
# =============================================================================

class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_second_run_downloads_nothing(self, repo, account):
        session = FakeSession(mailboxes=inbox(*(FakeMail.make(uid) for uid in range(1, 21))))

        first = await run_sync(session, repo, account)
        downloads = len(session.calls_to("download"))
        second = await run_sync(session, repo, account)

        assert first.new_messages == 20
        assert second.success
        assert second.new_messages == 0
        assert second.deleted_messages == 0
        assert len(session.calls_to("download")) == downloads
        assert await repo.get_message_count(account.id) == 20

    @pytest.mark.asyncio
    async def test_only_new_messages_downloaded(self, repo, account):
        session = FakeSession(mailboxes=inbox(FakeMail.make(1), FakeMail.make(2)))
        await run_sync(session, repo, account)

        session.mailboxes["INBOX"].append(FakeMail.make(3))
        result = await run_sync(session, repo, account)

        assert result.new_messages == 1
        assert session.calls_to("download")[-1] == [3]

    @pytest.mark.asyncio
    async def test_removed_message_is_deleted_locally(self, repo, account):
        session = FakeSession(mailboxes=inbox(*(FakeMail.make(uid) for uid in range(1, 6))))
        await run_sync(session, repo, account)

        session.mailboxes["INBOX"] = [m for m in session.mailboxes["INBOX"] if m.uid != 3]
        result = await run_sync(session, repo, account)

        assert result.deleted_messages == 1
        assert await repo.get_local_uids(account.id, "Inbox") == [1, 2, 4, 5]

    @pytest.mark.asyncio
    async def test_emptied_folder_keeps_local_records(self, repo, account):
        session = FakeSession(mailboxes=inbox(FakeMail.make(1)))
        await run_sync(session, repo, account)

        session.mailboxes["INBOX"] = []
        result = await run_sync(session, repo, account)

        assert result.deleted_messages == 0
        assert await repo.get_local_uids(account.id, "Inbox") == [1]

    @pytest.mark.asyncio
    async def test_partial_scan_skips_reconciliation(self, repo, account, make_message):
        await repo.upsert_message(make_message(account.id, 99))
        session = FakeSession(
            mailboxes=inbox(*(FakeMail.make(uid) for uid in range(1, 21))),
            failing_ranges={"11:20"},
        )

        result = await run_sync(session, repo, account, config=SyncConfig(scan_window_size=10))

        assert result.success
        assert result.failed_windows == 1
        assert result.new_messages == 10
        assert result.deleted_messages == 0
        assert 99 in await repo.get_local_uids(account.id, "Inbox")

    @pytest.mark.asyncio
    async def test_partial_scan_reconciles_when_configured(self, repo, account, make_message):
        await repo.upsert_message(make_message(account.id, 15))
        await repo.upsert_message(make_message(account.id, 99))
        session = FakeSession(
            mailboxes=inbox(*(FakeMail.make(uid) for uid in range(1, 21))),
            failing_ranges={"11:20"},
        )
        config = SyncConfig(scan_window_size=10, reconcile_on_partial_scan=True)

        result = await run_sync(session, repo, account, config=config)

        # UID 15 sits in the failed window, so it looks deleted too
        assert result.deleted_messages == 2
        assert await repo.get_local_uids(account.id, "Inbox") == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_failed_chunk_retried_next_run(self, repo, account):
        session = FakeSession(
            mailboxes=inbox(*(FakeMail.make(uid) for uid in range(1, 5))),
            failing_uids={3},
        )
        config = SyncConfig(download_chunk_size=2)

        first = await run_sync(session, repo, account, config=config)
        session.failing_uids.clear()
        second = await run_sync(session, repo, account, config=config)

        assert first.failed_chunks == 1
        assert first.new_messages == 2
        assert second.new_messages == 2
        assert await repo.get_local_uids(account.id, "Inbox") == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_placeholders_not_counted(self, repo, account):
        mails = [FakeMail.make(uid) for uid in (1, 2, 3)]
        mails += [FakeMail(uid=4, source=b"garbage"), FakeMail(uid=5, source=None)]
        session = FakeSession(mailboxes=inbox(*mails))

        result = await run_sync(session, repo, account)

        assert result.new_messages == 3
        assert result.placeholders == 2
        assert await repo.get_message_count(account.id) == 5
        # Placeholders are stored as read
        assert await repo.get_unread_count(account.id) == 3

    @pytest.mark.asyncio
    async def test_legacy_leaf_folder_migrated(self, repo, account, make_message):
        await repo.upsert_message(make_message(account.id, 5, folder="Archive"))
        session = FakeSession(mailboxes={"INBOX": [], "INBOX/Archive": [FakeMail.make(5)]})

        result = await run_sync(session, repo, account)

        assert result.new_messages == 0
        assert session.calls_to("download") == []
        assert await repo.get_local_uids(account.id, "Inbox/Archive") == [5]
        assert await repo.get_local_uids(account.id, "Archive") == []

    @pytest.mark.asyncio
    async def test_top_level_folder_sharing_a_leaf_name_is_not_migrated(self, repo, account):
        session = FakeSession(
            mailboxes={
                "INBOX": [],
                "Archive": [FakeMail.make(1), FakeMail.make(2)],
                "INBOX/Archive": [FakeMail.make(7)],
            }
        )

        first = await run_sync(session, repo, account)
        second = await run_sync(session, repo, account)

        assert first.new_messages == 3
        assert second.new_messages == 0
        assert second.deleted_messages == 0
        assert await repo.get_local_uids(account.id, "Archive") == [1, 2]
        assert await repo.get_local_uids(account.id, "Inbox/Archive") == [7]


# =============================================================================
# Several server folders mapped to one local folder
# =============================================================================

class TestCollidingFolders:
    @staticmethod
    def sent_twice(**extra_mailboxes):
        return FakeSession(
            mailboxes={
                "INBOX": [],
                "Sent": [FakeMail.make(1), FakeMail.make(2)],
                "INBOX/Sent": [FakeMail.make(10)],
                **extra_mailboxes,
            },
            descriptors=[
                FolderDescriptor(path="INBOX"),
                FolderDescriptor(path="Sent", special_use="\\Sent"),
                FolderDescriptor(path="INBOX/Sent"),
            ],
        )

    @pytest.mark.asyncio
    async def test_repeated_runs_are_stable(self, repo, account):
        session = self.sent_twice()

        first = await run_sync(session, repo, account)
        second = await run_sync(session, repo, account)
        third = await run_sync(session, repo, account)

        assert (first.new_messages, first.deleted_messages) == (3, 0)
        assert (second.new_messages, second.deleted_messages) == (0, 0)
        assert (third.new_messages, third.deleted_messages) == (0, 0)
        assert await repo.get_local_uids(account.id, "Sent") == [1, 2, 10]

    @pytest.mark.asyncio
    async def test_orphans_removed_against_the_whole_group(self, repo, account):
        session = self.sent_twice()
        await run_sync(session, repo, account)

        session.mailboxes["Sent"] = [FakeMail.make(2)]
        result = await run_sync(session, repo, account)

        assert result.deleted_messages == 1
        assert await repo.get_local_uids(account.id, "Sent") == [2, 10]

    @pytest.mark.asyncio
    async def test_skipped_member_blocks_orphan_removal(self, repo, account):
        session = self.sent_twice()
        await run_sync(session, repo, account)

        session.lock_errors["Sent"] = FolderLockError("Sent", "NO try again later")
        result = await run_sync(session, repo, account)

        assert result.skipped_folders == 1
        assert result.deleted_messages == 0
        assert await repo.get_local_uids(account.id, "Sent") == [1, 2, 10]

    @pytest.mark.asyncio
    async def test_each_group_reported_once(self, repo, account):
        session = self.sent_twice()
        totals = []

        await run_sync(session, repo, account, progress_callback=lambda p: totals.append(p.total_folders))

        assert totals[-1] == 2


# =============================================================================
# Failure handling
# =============================================================================

class TestFailures:
    @pytest.mark.asyncio
    async def test_connection_failure(self, repo, account):
        session = FakeSession(mailboxes=inbox(FakeMail.make(1)), connect_error=IMAPConnectionError("refused"))
        states = []

        result = await run_sync(
            session, repo, account, progress_callback=lambda p: states.append(p.state),
        )

        assert not result.success
        assert "refused" in result.error
        assert states == [SyncState.DISCONNECTED, SyncState.CONNECTION_FAILED, SyncState.DONE]
        assert session.calls_to("logout") == []
        stored = await repo.get_account(account.id)
        assert stored.last_sync_time is None

    @pytest.mark.asyncio
    async def test_authentication_failure(self, repo, account):
        session = FakeSession(connect_error=IMAPAuthenticationError("bad password"))

        result = await run_sync(session, repo, account)

        assert not result.success
        assert "bad password" in result.error

    @pytest.mark.asyncio
    async def test_folder_list_failure_fails_run(self, repo, account):
        session = FakeSession(mailboxes=inbox(), list_error=IMAPError("LIST failed"))

        result = await run_sync(session, repo, account)

        assert not result.success
        assert "LIST failed" in result.error
        assert session.calls_to("logout") == [None]

    @pytest.mark.asyncio
    async def test_lock_failure_skips_folder(self, repo, account):
        session = FakeSession(
            mailboxes=inbox(FakeMail.make(1), Archive=[FakeMail.make(1)], Sent=[FakeMail.make(2)]),
            lock_errors={"Archive": FolderLockError("Archive", "NO permission denied")},
        )

        result = await run_sync(session, repo, account)

        assert result.success
        assert result.skipped_folders == 1
        assert result.new_messages == 2
        assert await repo.get_local_uids(account.id, "Sent") == [2]

    @pytest.mark.asyncio
    async def test_vanished_folder_skipped(self, repo, account):
        session = FakeSession(
            mailboxes=inbox(FakeMail.make(1)),
            descriptors=[FolderDescriptor(path="INBOX"), FolderDescriptor(path="Old")],
        )

        result = await run_sync(session, repo, account)

        assert result.success
        assert result.skipped_folders == 1
        assert result.new_messages == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_skips_folder_and_releases_lock(
        self, repo, account, monkeypatch
    ):
        session = FakeSession(mailboxes=inbox(FakeMail.make(1), Sent=[FakeMail.make(2)]))

        async def upsert_message(message):
            raise RuntimeError("disk full")

        monkeypatch.setattr(repo, "upsert_message", upsert_message)

        result = await run_sync(session, repo, account)

        assert result.success
        assert result.skipped_folders == 2
        assert session.locked is None
        assert session.calls_to("unlock") == ["INBOX", "Sent"]

    @pytest.mark.asyncio
    async def test_logout_failure_ignored_on_success(self, repo, account):
        session = FakeSession(mailboxes=inbox(FakeMail.make(1)), logout_error=IMAPError("BYE"))

        result = await run_sync(session, repo, account)

        assert result.success
        assert result.error is None

    @pytest.mark.asyncio
    async def test_logout_failure_folded_into_error(self, repo, account):
        session = FakeSession(
            mailboxes=inbox(),
            list_error=IMAPError("LIST failed"),
            logout_error=IMAPError("BYE"),
        )

        result = await run_sync(session, repo, account)

        assert not result.success
        assert "LIST failed" in result.error
        assert "logout failed" in result.error


# =============================================================================
# Account metadata and progress
# =============================================================================

class TestAccountState:
    @pytest.mark.asyncio
    async def test_sync_state_recorded(self, repo, account):
        session = FakeSession(mailboxes=inbox(FakeMail.make(7), FakeMail.make(12)))

        await run_sync(session, repo, account)

        stored = await repo.get_account(account.id)
        assert stored.last_sync_uid == 12
        assert stored.last_sync_time is not None
        assert account.last_sync_uid == 12

    @pytest.mark.asyncio
    async def test_quota_stored_during_run(self, repo, account):
        session = FakeSession(
            mailboxes=inbox(),
            capabilities={"QUOTA"},
            quota=QuotaUsage(used=100, limit=1000),
        )

        await run_sync(session, repo, account)

        stored = await repo.get_account(account.id)
        assert (stored.storage_used_kb, stored.storage_total_kb) == (100, 1000)

    @pytest.mark.asyncio
    async def test_unsaved_account_is_stored(self, repo, sample_account):
        session = FakeSession(mailboxes=inbox(FakeMail.make(1)))

        result = await run_sync(session, repo, sample_account)

        assert result.success
        assert sample_account.id is not None
        assert (await repo.get_account_by_name("test")).id == sample_account.id

    @pytest.mark.asyncio
    async def test_progress_states_in_order(self, repo, account):
        session = FakeSession(mailboxes=inbox(FakeMail.make(1)))
        states = []

        await run_sync(session, repo, account, progress_callback=lambda p: states.append(p.state))

        expected = [
            SyncState.DISCONNECTED,
            SyncState.CONNECTED,
            SyncState.LOCKED,
            SyncState.SCANNED,
            SyncState.DOWNLOADED,
            SyncState.RECONCILED,
            SyncState.UNLOCKED,
            SyncState.LOGGED_OUT,
            SyncState.DONE,
        ]
        # Field-only updates repeat the current state; keep transitions
        transitions = [s for i, s in enumerate(states) if i == 0 or s != states[i - 1]]
        assert transitions == expected

    @pytest.mark.asyncio
    async def test_progress_callback_errors_do_not_break_sync(self, repo, account):
        session = FakeSession(mailboxes=inbox(FakeMail.make(1)))

        def callback(progress):
            raise ValueError("UI gone")

        result = await run_sync(session, repo, account, progress_callback=callback)

        assert result.success
        assert result.new_messages == 1

    @pytest.mark.asyncio
    async def test_unread_callback_errors_do_not_fail_run(self, repo, account):
        session = FakeSession(mailboxes=inbox(FakeMail.make(1)))

        def badge(count):
            raise ValueError("badge gone")

        result = await run_sync(session, repo, account, unread_callback=badge)

        assert result.success
        assert result.error is None
        assert result.unread_count == 1
        assert session.calls_to("logout") == [None]
