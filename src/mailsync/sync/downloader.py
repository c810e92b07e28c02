# =============================================================================
# Message Downloader
# =============================================================================
# Fetches full sources for new UIDs in small chunks, parses them and stores
# one record per UID.
#
# Every UID the server returns ends up as a record, even when it can't be
# parsed: a placeholder is stored instead, so the message isn't fetched
# again on every run and the user can see something went wrong.
#
#   - Parse error   -> "Error loading email UID n", read + flagged
#                      (any exception from the parser counts)
#   - No body       -> "Empty Body UID n", read
#
# Placeholders are not counted as new messages.
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable

from mailsync.core import Account, Message, MessageFlags
from mailsync.imap.session import FetchedMessage, IMAPError, MailSession
from mailsync.mime.parser import MessageParseError, ParsedMessage, parse_message
from mailsync.storage.repository import Repository

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 50

# Fields used for placeholder records
PLACEHOLDER_SENDER_NAME = "System Error"
PLACEHOLDER_SENDER = "error@local"
PLACEHOLDER_CLASSIFICATION = "System Error"

DEFAULT_SENDER = "Unknown"
DEFAULT_SUBJECT = "(No Subject)"


@dataclass
class DownloadStats:
    """
    Counters for one download() call.

    Attributes:
        saved: Parsed records stored (the "new messages" count).
        placeholders: Placeholder records stored.
        failed_chunks: Chunks whose fetch failed.
    """
    saved: int = 0
    placeholders: int = 0
    failed_chunks: int = 0

    def __iadd__(self, other: "DownloadStats") -> "DownloadStats":
        self.saved += other.saved
        self.placeholders += other.placeholders
        self.failed_chunks += other.failed_chunks
        return self


def chunked(uids: Iterable[int], size: int) -> list[list[int]]:
    """Sort UIDs and split them into lists of at most `size`."""
    ordered = sorted(uids)
    return [ordered[i:i + size] for i in range(0, len(ordered), size)]


class MessageDownloader:
    """
    Downloads and stores messages for one folder.

    Usage:
        >>> downloader = MessageDownloader(session, repo, account, "Inbox")
        >>> stats = await downloader.download([101, 102, 103])
        >>> stats.saved
        3

    Attributes:
        folder: Canonical folder name records are stored under.
        chunk_size: UIDs per UID FETCH.
    """

    def __init__(
        self,
        session: MailSession,
        repo: Repository,
        account: Account,
        folder: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        parser: Callable[[bytes], ParsedMessage] = parse_message,
        *,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        self.session = session
        self.repo = repo
        self.account = account
        self.folder = folder
        self.chunk_size = chunk_size
        self.parser = parser
        self.log = log or logger

    async def download(self, uids: Iterable[int]) -> DownloadStats:
        """
        Fetch, parse and store the given UIDs.

        A failed chunk fetch is logged and skipped; records stored before
        the failure stay stored. Storage errors propagate.
        """
        stats = DownloadStats()

        for chunk in chunked(uids, self.chunk_size):
            self.log.debug(f"Downloading {len(chunk)} messages ({chunk[0]}..{chunk[-1]})")
            try:
                async for item in self.session.fetch_full_messages(chunk):
                    await self._store(item, stats)
            except IMAPError as e:
                self.log.error(f"Failed to download chunk {chunk[0]}..{chunk[-1]}: {e}")
                stats.failed_chunks += 1

        return stats

    async def _store(self, item: FetchedMessage, stats: DownloadStats) -> None:
        message, is_placeholder = await self._build_record(item)
        await self.repo.upsert_message(message)

        if is_placeholder:
            stats.placeholders += 1
        else:
            stats.saved += 1

    async def _build_record(self, item: FetchedMessage) -> tuple[Message, bool]:
        """Returns (record, is_placeholder)."""
        if not item.has_body:
            self.log.warning(f"UID {item.uid} has no body, storing placeholder")
            return self._empty_body_placeholder(item.uid), True

        try:
            parsed = await asyncio.to_thread(self.parser, item.source)
        except MessageParseError as e:
            self.log.warning(f"Failed to parse UID {item.uid}: {e}")
            return self._parse_error_placeholder(item.uid, e), True
        except Exception as e:
            # Any parser failure is a parse error for this message
            self.log.error(f"Parser crashed on UID {item.uid}: {e}", exc_info=True)
            return self._parse_error_placeholder(item.uid, e), True

        flags = MessageFlags.from_imap(item.flags)
        return Message(
            account_id=self.account.id,
            folder=self.folder,
            uid=item.uid,
            sender=parsed.sender or DEFAULT_SENDER,
            sender_name=parsed.sender_name or parsed.sender or DEFAULT_SENDER,
            subject=parsed.subject or DEFAULT_SUBJECT,
            body_text=parsed.body_text,
            body_html=parsed.body_html,
            date=parsed.date or datetime.now(timezone.utc),
            flags=flags,
            attachments=parsed.attachments,
        ), False

    def _parse_error_placeholder(self, uid: int, error: Exception) -> Message:
        return Message(
            account_id=self.account.id,
            folder=self.folder,
            uid=uid,
            sender=PLACEHOLDER_SENDER,
            sender_name=PLACEHOLDER_SENDER_NAME,
            subject=f"Error loading email UID {uid}",
            body_text=f"This message could not be parsed.\n\nError: {error}",
            date=datetime.now(timezone.utc),
            flags=MessageFlags.SEEN | MessageFlags.FLAGGED,
            classification=PLACEHOLDER_CLASSIFICATION,
        )

    def _empty_body_placeholder(self, uid: int) -> Message:
        return Message(
            account_id=self.account.id,
            folder=self.folder,
            uid=uid,
            sender=PLACEHOLDER_SENDER,
            sender_name=PLACEHOLDER_SENDER_NAME,
            subject=f"Empty Body UID {uid}",
            body_text="The server returned no content for this message.",
            date=datetime.now(timezone.utc),
            flags=MessageFlags.SEEN,
            classification=PLACEHOLDER_CLASSIFICATION,
        )
