# =============================================================================
# Mail Session Contract
# =============================================================================
# The sync core talks to the server through this small, pull-based contract.
# IMAPSession (client.py) implements it on top of aioimaplib; the test suite
# implements it in memory.
#
# Both fetch operations return async iterators: each produces a lazy, finite,
# non-restartable sequence of fetched items, so the range scanner and the
# downloader can `async for` over them regardless of the transport.
#
# A session operates on one selected mailbox at a time. lock_folder() is an
# async context manager: the lock is held for the duration of the `async with`
# block and released on every exit path, exceptions and cancellation included.
# =============================================================================

from dataclasses import dataclass, field
from typing import AsyncContextManager, AsyncIterator, Protocol

from mailsync.core import FolderDescriptor


@dataclass(frozen=True)
class FetchedFlags:
    """UID + flags of one message, as returned by a metadata-only fetch."""
    uid: int
    flags: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class FetchedMessage:
    """
    One message returned by a full fetch.

    Attributes:
        uid: IMAP UID.
        flags: IMAP flags (e.g. {"\\Seen", "\\Flagged"}).
        source: Raw RFC 822 bytes, or None if the server returned no body.
    """
    uid: int
    flags: frozenset[str] = field(default_factory=frozenset)
    source: bytes | None = None

    @property
    def has_body(self) -> bool:
        return bool(self.source)


@dataclass(frozen=True)
class QuotaUsage:
    """
    Storage quota as reported by the server.

    Attributes:
        used: Usage, in units of `unit` bytes.
        limit: Limit, in units of `unit` bytes. 0 means "no data".
        unit: Size of one unit in bytes. RFC 2087 STORAGE is in KiB (1024).
    """
    used: int
    limit: int
    unit: int = 1024


@dataclass
class MailboxLock:
    """
    Handle for the currently locked (selected) mailbox.

    Attributes:
        path: Server path of the locked folder.
        exists: Message count reported by the server on SELECT.
        uidnext: UIDNEXT reported by the server, if any.
    """
    path: str
    exists: int = 0
    uidnext: int | None = None


class MailSession(Protocol):
    """The protocol session the sync core depends on."""

    async def connect(self) -> None: ...

    async def logout(self) -> None: ...

    def has_capability(self, capability: str) -> bool: ...

    async def list_folders(self) -> list[FolderDescriptor]: ...

    def lock_folder(self, path: str) -> AsyncContextManager[MailboxLock]: ...

    def fetch_identifiers_and_flags(self, seq_range: str) -> AsyncIterator[FetchedFlags]: ...

    def fetch_full_messages(self, uids: list[int]) -> AsyncIterator[FetchedMessage]: ...

    async def query_quota(self, folder: str) -> QuotaUsage | None: ...

    # Mutations act on the currently locked mailbox.
    async def set_flags(self, uids: list[int], flags: list[str], *, add: bool = True) -> None: ...

    async def delete_messages(self, uids: list[int]) -> None: ...


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(Exception):
    """Base exception for IMAP operations."""
    pass


class IMAPConnectionError(IMAPError):
    """Raised when unable to connect to IMAP server."""
    pass


class IMAPAuthenticationError(IMAPConnectionError):
    """Raised when IMAP authentication fails."""
    pass


class FolderLockError(IMAPError):
    """Raised when a folder cannot be selected (missing, renamed, denied)."""

    def __init__(self, path: str, reason: str, *, missing: bool = False) -> None:
        super().__init__(f"Cannot lock folder {path!r}: {reason}")
        self.path = path
        self.missing = missing


class RangeFetchError(IMAPError):
    """Raised when a UID/FLAGS fetch for a sequence range fails."""
    pass


class ChunkDownloadError(IMAPError):
    """Raised when a full-message fetch for a UID chunk fails."""
    pass


class QuotaError(IMAPError):
    """Raised when the quota query fails or is unsupported."""
    pass
