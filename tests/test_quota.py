"""Tests for quota inspection."""

import logging

import pytest

from fakes import FakeSession
from mailsync.imap.session import QuotaError, QuotaUsage
from mailsync.sync.quota import QuotaReport, inspect_quota


class TestInspectQuota:
    @pytest.mark.asyncio
    async def test_stores_usage_in_kb(self, repo, account):
        session = FakeSession(capabilities={"QUOTA"}, quota=QuotaUsage(used=2048, limit=1048576))

        report = await inspect_quota(session, account, repo)

        assert report == QuotaReport(used_kb=2048, total_kb=1048576)
        stored = await repo.get_account(account.id)
        assert stored.storage_used_kb == 2048
        assert stored.storage_total_kb == 1048576
        assert account.storage_total_kb == 1048576

    @pytest.mark.asyncio
    async def test_converts_byte_units(self, repo, account):
        session = FakeSession(
            capabilities={"QUOTA"},
            quota=QuotaUsage(used=1536 * 1024, limit=10 * 1024 * 1024, unit=1),
        )

        report = await inspect_quota(session, account, repo)

        assert report == QuotaReport(used_kb=1536, total_kb=10240)

    @pytest.mark.asyncio
    async def test_skipped_without_capability(self, repo, account):
        session = FakeSession(quota=QuotaUsage(used=1, limit=2))

        assert await inspect_quota(session, account, repo) is None
        assert session.calls_to("quota") == []

    @pytest.mark.asyncio
    async def test_zero_limit_means_no_data(self, repo, account):
        session = FakeSession(capabilities={"QUOTA"}, quota=QuotaUsage(used=10, limit=0))

        assert await inspect_quota(session, account, repo) is None
        stored = await repo.get_account(account.id)
        assert stored.storage_total_kb == 0

    @pytest.mark.asyncio
    async def test_query_failure_is_logged_not_raised(self, repo, account, caplog):
        session = FakeSession(capabilities={"QUOTA"}, quota_error=QuotaError("GETQUOTAROOT failed"))

        with caplog.at_level(logging.WARNING):
            assert await inspect_quota(session, account, repo) is None

        assert "Quota query failed" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_logged_not_raised(self, repo, account):
        session = FakeSession(capabilities={"QUOTA"}, quota_error=RuntimeError("boom"))

        assert await inspect_quota(session, account, repo) is None

    @pytest.mark.asyncio
    async def test_queries_configured_folder(self, repo, account):
        session = FakeSession(capabilities={"QUOTA"}, quota=QuotaUsage(used=1, limit=2))

        await inspect_quota(session, account, repo, "Archive")

        assert session.calls_to("quota") == ["Archive"]


def test_percent_used():
    assert QuotaReport(used_kb=250, total_kb=1000).percent_used == 25.0
    assert QuotaReport(used_kb=5, total_kb=0).percent_used == 0.0
