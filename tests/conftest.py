# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the Mailsync test suite.
# =============================================================================

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from mailsync.core import Account, Attachment, Message
from mailsync.storage import Database, Repository


@pytest.fixture
def sample_account():
    """Create a sample Account for testing (not yet stored)."""
    return Account(
        name="test",
        email="test@example.com",
        imap_host="imap.example.com",
        imap_port=993,
        imap_security="ssl",
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    """A fresh database in a temporary directory."""
    database = Database(tmp_path / "mailsync.db")
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def repo(db):
    return Repository(db)


@pytest_asyncio.fixture
async def account(repo, sample_account):
    """The sample account, stored so messages can reference it."""
    return await repo.save_account(sample_account)


@pytest.fixture
def make_message():
    """Factory for Message records."""

    def _make(account_id: int, uid: int, folder: str = "Inbox", **kwargs) -> Message:
        kwargs.setdefault("sender", "sender@example.com")
        kwargs.setdefault("sender_name", "Test Sender")
        kwargs.setdefault("subject", f"Subject {uid}")
        kwargs.setdefault("body_text", "This is a test email body.")
        kwargs.setdefault("date", datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc))
        return Message(account_id=account_id, folder=folder, uid=uid, **kwargs)

    return _make


@pytest.fixture
def sample_attachment():
    return Attachment(filename="report.pdf", content_type="application/pdf", data=b"%PDF-1.4 test")

