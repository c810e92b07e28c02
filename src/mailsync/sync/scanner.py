# =============================================================================
# Range Scanner
# =============================================================================
# Walks a folder's whole sequence-number space in fixed-size windows,
# fetching only UID + FLAGS, and collects every UID the server reports.
#
# Large mailboxes can't be fetched in one go: a single "1:*" FETCH on a
# folder with 200k messages produces a response aioimaplib can't parse
# within sane memory and recursion limits. Windows of a few thousand
# sequence numbers keep every response small.
#
# A failed window is reported, not raised: its UIDs are simply missing
# from `observed`, and they are retried on the next run.
# =============================================================================

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Collection

from mailsync.imap.session import IMAPError, MailSession

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 5000


@dataclass
class ScanWindow:
    """
    Result of scanning one window.

    Attributes:
        start: First sequence number (1-based, inclusive).
        end: Last sequence number (inclusive).
        observed: UIDs the server reported in this window.
        candidates: Observed UIDs not stored locally, ascending.
        failed: True if the window's fetch failed.
    """
    start: int
    end: int
    observed: list[int] = field(default_factory=list)
    candidates: list[int] = field(default_factory=list)
    failed: bool = False

    @property
    def seq_range(self) -> str:
        return f"{self.start}:{self.end}"


def window_ranges(total: int, size: int = DEFAULT_WINDOW_SIZE) -> list[tuple[int, int]]:
    """
    Split sequence numbers 1..total into (start, end) windows.

    Example:
        >>> window_ranges(9999, 5000)
        [(1, 5000), (5001, 9999)]
    """
    if size <= 0:
        raise ValueError(f"Window size must be positive, got {size}")
    return [
        (start, min(start + size - 1, total))
        for start in range(1, total + 1, size)
    ]


class RangeScanner:
    """
    Scans a locked folder window by window.

    Usage:
        >>> scanner = RangeScanner(session)
        >>> async for window in scanner.scan(lock.exists, local_uids):
        ...     await downloader.download(window.candidates)
        >>> scanner.observed   # every UID seen this run

    Attributes:
        window_size: Sequence numbers per FETCH.
        observed: All UIDs seen across successful windows.
        failed_windows: Number of windows whose fetch failed.
    """

    def __init__(
        self,
        session: MailSession,
        window_size: int = DEFAULT_WINDOW_SIZE,
        *,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        if window_size <= 0:
            raise ValueError(f"Window size must be positive, got {window_size}")
        self.session = session
        self.window_size = window_size
        self.observed: set[int] = set()
        self.failed_windows = 0
        self.log = log or logger

    @property
    def is_complete(self) -> bool:
        """True if every window scanned so far succeeded."""
        return self.failed_windows == 0

    async def scan(
        self,
        total: int,
        local_uids: Collection[int],
    ) -> AsyncIterator[ScanWindow]:
        """
        Scan sequence numbers 1..total.

        Args:
            total: Message count reported on SELECT.
            local_uids: UIDs already stored for this folder.

        Yields:
            One ScanWindow per window, in order.
        """
        local = local_uids if isinstance(local_uids, (set, frozenset)) else set(local_uids)

        for start, end in window_ranges(total, self.window_size):
            window = ScanWindow(start=start, end=end)
            self.log.debug(f"Scanning {window.seq_range}")

            uids: set[int] = set()
            try:
                async for item in self.session.fetch_identifiers_and_flags(window.seq_range):
                    uids.add(item.uid)
            except IMAPError as e:
                # Drop whatever arrived before the failure; a partial window
                # is treated like a missing one.
                self.log.error(f"Failed to scan {window.seq_range}: {e}")
                self.failed_windows += 1
                window.failed = True
                yield window
                continue

            self.observed |= uids
            window.observed = sorted(uids)
            window.candidates = sorted(uids - local)
            if window.candidates:
                self.log.debug(f"{len(window.candidates)} new UIDs in {window.seq_range}")
            yield window
