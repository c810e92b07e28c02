# =============================================================================
# Sync Manager
# =============================================================================
# Drives one account's sync run against the server.
#
# Sync strategy, per run:
#   1. Connect and authenticate (failure ends the run)
#   2. Store quota (best effort)
#   3. List folders and map each one to its canonical local name
#   4. Per canonical folder, strictly one server folder at a time:
#        lock -> scan UID/FLAGS windows -> download new UIDs -> unlock
#      The last server folder of the group removes orphans before unlocking,
#      against the UIDs reported by the whole group
#   5. Record the Inbox's highest UID and the sync time on the account
#   6. Hand the aggregate unread count to the unread callback
#   7. Logout
#
# Failure model:
#   - Connection and folder-listing failures fail the whole run
#   - Anything that goes wrong inside one folder skips that folder only
#   - A failed scan window or download chunk is retried on the next run,
#     because its UIDs are neither stored nor reconciled
#
# States reported to the progress callback:
#   DISCONNECTED -> CONNECTED -> (LOCKED -> SCANNED -> DOWNLOADED ->
#   RECONCILED -> UNLOCKED)* -> LOGGED_OUT -> DONE
#   DISCONNECTED -> CONNECTION_FAILED -> DONE
# =============================================================================

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Callable

from mailsync.config import SyncConfig
from mailsync.core import Account, CanonicalFolder
from mailsync.imap.session import FolderLockError, MailSession
from mailsync.mime.parser import ParsedMessage, parse_message
from mailsync.storage.repository import Repository
from mailsync.sync.downloader import DownloadStats, MessageDownloader
from mailsync.sync.folders import build_folder_map, group_folder_map, legacy_leaf_migrations
from mailsync.sync.quota import inspect_quota
from mailsync.sync.reconciler import reconcile_orphans
from mailsync.sync.scanner import RangeScanner


logger = logging.getLogger(__name__)


class SyncState(Enum):
    """Where a sync run currently is."""
    DISCONNECTED = auto()
    CONNECTED = auto()
    CONNECTION_FAILED = auto()
    LOCKED = auto()             # Folder selected
    SCANNED = auto()            # One UID/FLAGS window scanned
    DOWNLOADED = auto()         # New messages of one window stored
    RECONCILED = auto()         # Orphans removed
    UNLOCKED = auto()           # Folder released
    LOGGED_OUT = auto()
    DONE = auto()


@dataclass
class SyncProgress:
    """
    Progress information for a sync run.

    Attributes:
        state: Current state.
        account: Name of the account being synced.
        folder: Canonical name of the folder being synced (if any).
        total_folders: Folders to sync this run.
        synced_folders: Folders finished so far.
        total_messages: Message count of the current folder.
        scanned_messages: Sequence numbers scanned so far in the current folder.
        new_messages: New messages stored so far this run.
        deleted_messages: Orphans removed so far this run.
        error: Error description, set on CONNECTION_FAILED.
    """
    state: SyncState = SyncState.DISCONNECTED
    account: str | None = None
    folder: str | None = None
    total_folders: int = 0
    synced_folders: int = 0
    total_messages: int = 0
    scanned_messages: int = 0
    new_messages: int = 0
    deleted_messages: int = 0
    error: str | None = None


# Type aliases for callbacks
ProgressCallback = Callable[[SyncProgress], None]
UnreadCallback = Callable[[int], None]


@dataclass
class SyncResult:
    """
    Result of a sync run. Not persisted.

    Attributes:
        success: False only for run-level failures (connect, folder list).
        new_messages: Parsed messages stored this run (placeholders excluded).
        error: What made the run fail, if it did.
        deleted_messages: Orphans removed.
        placeholders: Placeholder records stored.
        skipped_folders: Folders that couldn't be locked or failed mid-sync.
        failed_windows: Scan windows whose fetch failed.
        failed_chunks: Download chunks whose fetch failed.
        unread_count: Aggregate unread count after the run.
        duration_seconds: Time taken for sync.
    """
    success: bool = True
    new_messages: int = 0
    error: str | None = None
    deleted_messages: int = 0
    placeholders: int = 0
    skipped_folders: int = 0
    failed_windows: int = 0
    failed_chunks: int = 0
    unread_count: int = 0
    duration_seconds: float = 0.0


@dataclass
class FolderPass:
    """
    One canonical folder's state across the server folders mapped to it.

    Attributes:
        folder: Canonical folder name.
        local_uids: UIDs stored locally before this run's downloads.
        observed: UIDs reported by every server folder scanned so far.
        failed_windows: Scan windows that failed across the group.
        skipped_paths: Server folders that couldn't be synced.
        has_messages: True once any server folder reported messages.
    """
    folder: str
    local_uids: list[int]
    observed: set[int] = field(default_factory=set)
    failed_windows: int = 0
    skipped_paths: int = 0
    has_messages: bool = False


class SyncLogAdapter(logging.LoggerAdapter):
    """Prefixes log lines with the account and folder being synced."""

    def process(self, msg, kwargs):
        folder = self.extra.get("folder")
        prefix = f"[{self.extra['account']}/{folder}]" if folder else f"[{self.extra['account']}]"
        kwargs.setdefault("extra", {}).update(self.extra)
        return f"{prefix} {msg}", kwargs


class SyncManager:
    """
    Synchronizes one account.

    Usage:
        >>> manager = SyncManager(session, repo, account, config=config.sync)
        >>> result = await manager.sync_account()
        >>> result.new_messages
        12

    Attributes:
        session: Protocol session (not yet connected).
        repo: Repository for local storage operations.
        account: Account being synced.
        config: Sync tuning.
    """

    def __init__(
        self,
        session: MailSession,
        repo: Repository,
        account: Account,
        *,
        config: SyncConfig | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        parser: Callable[[bytes], ParsedMessage] = parse_message,
        progress_callback: ProgressCallback | None = None,
        unread_callback: UnreadCallback | None = None,
    ) -> None:
        self.session = session
        self.repo = repo
        self.account = account
        self.config = config or SyncConfig()
        self.parser = parser
        self.progress_callback = progress_callback
        self.unread_callback = unread_callback

        self._base_logger = logger if logger is not None else logging.getLogger(__name__)
        self.log = SyncLogAdapter(self._base_logger, {"account": account.name, "folder": None})
        self._progress = SyncProgress(account=account.name)

    def _folder_log(self, folder: str) -> SyncLogAdapter:
        return SyncLogAdapter(self._base_logger, {"account": self.account.name, "folder": folder})

    def _report(self, state: SyncState | None = None, **updates) -> None:
        """Update progress and notify the callback."""
        if state is not None:
            self._progress.state = state
        for key, value in updates.items():
            setattr(self._progress, key, value)

        if self.progress_callback:
            try:
                self.progress_callback(self._progress)
            except Exception:
                self.log.exception("Progress callback failed")

    @property
    def state(self) -> SyncState:
        return self._progress.state

    # =========================================================================
    # Run
    # =========================================================================

    async def sync_account(self) -> SyncResult:
        """
        Run one full sync of the account.

        Never raises for server-side problems; check `result.success`.
        """
        started = time.monotonic()
        result = SyncResult()
        self._progress = SyncProgress(account=self.account.name)
        self._report(SyncState.DISCONNECTED)

        try:
            await self.session.connect()
        except Exception as e:
            self.log.error(f"Connection failed: {e}")
            result.success = False
            result.error = f"Connection failed: {e}"
            self._report(SyncState.CONNECTION_FAILED, error=result.error)
            self._report(SyncState.DONE)
            result.duration_seconds = time.monotonic() - started
            return result

        self._report(SyncState.CONNECTED)
        self.log.info("Connected, starting sync")

        try:
            await self._sync_connected(result)
        except Exception as e:
            self.log.error(f"Sync failed: {e}", exc_info=True)
            result.success = False
            result.error = f"Sync failed: {e}"

        try:
            await self.session.logout()
            self._report(SyncState.LOGGED_OUT)
        except Exception as e:
            if result.success:
                self.log.warning(f"Logout failed: {e}")
            else:
                self.log.error(f"Logout failed: {e}")
                result.error = f"{result.error}; logout failed: {e}"

        self._report(SyncState.DONE)
        result.duration_seconds = time.monotonic() - started

        if result.success:
            self.log.info(
                f"Sync complete: {result.new_messages} new, "
                f"{result.deleted_messages} deleted, "
                f"{result.skipped_folders} folders skipped "
                f"({result.duration_seconds:.1f}s)"
            )
        return result

    async def _sync_connected(self, result: SyncResult) -> None:
        await self._ensure_account_saved()

        await inspect_quota(
            self.session, self.account, self.repo, self.config.quota_folder, log=self.log,
        )

        descriptors = await self.session.list_folders()
        self.log.info(f"Found {len(descriptors)} folders on server")
        mapping = build_folder_map(descriptors, self.log)

        await self._apply_legacy_migrations(mapping)

        groups = group_folder_map(mapping)
        self._report(total_folders=len(groups))
        for i, (canonical, paths) in enumerate(groups.items()):
            self._report(folder=canonical, synced_folders=i, total_messages=0, scanned_messages=0)
            await self._sync_folder(canonical, paths, result)

        self._report(folder=None, synced_folders=len(groups))

        max_uid = await self.repo.get_max_uid(self.account.id, CanonicalFolder.INBOX)
        now = datetime.now(timezone.utc)
        await self.repo.update_account_sync_state(self.account.id, max_uid, now)
        self.account.last_sync_uid = max_uid
        self.account.last_sync_time = now

        result.unread_count = await self.repo.get_aggregate_unread_count()
        if self.unread_callback:
            try:
                self.unread_callback(result.unread_count)
            except Exception:
                self.log.exception("Unread callback failed")

    async def _ensure_account_saved(self) -> None:
        """Make sure the account has a database row, so records can reference it."""
        if self.account.id is not None:
            return
        stored = await self.repo.get_account_by_name(self.account.name)
        if stored:
            self.account.id = stored.id
        else:
            await self.repo.save_account(self.account)
            self.log.info(f"Stored new account with id {self.account.id}")

    async def _apply_legacy_migrations(self, mapping: dict[str, str]) -> None:
        for old_name, new_name in legacy_leaf_migrations(mapping):
            try:
                await self.repo.migrate_folder(self.account.id, old_name, new_name)
            except Exception as e:
                self.log.warning(f"Failed to migrate {old_name!r} to {new_name!r}: {e}")

    # =========================================================================
    # Per-folder sync
    # =========================================================================

    async def _sync_folder(self, canonical: str, paths: list[str], result: SyncResult) -> None:
        """
        Sync one canonical folder from every server folder mapped to it.

        Orphans are removed once, inside the last server folder's lock,
        against everything the whole group reported. Never raises except
        on cancellation.
        """
        log = self._folder_log(canonical)
        if len(paths) > 1:
            log.info(f"Syncing {len(paths)} server folders into one: {paths}")

        try:
            local_uids = await self.repo.get_local_uids(self.account.id, canonical)
        except Exception as e:
            log.error(f"Failed to load local messages: {e}", exc_info=True)
            result.skipped_folders += len(paths)
            return

        folder_pass = FolderPass(canonical, local_uids)
        for i, path in enumerate(paths):
            await self._sync_path(path, folder_pass, i == len(paths) - 1, result, log)

    async def _sync_path(
        self,
        path: str,
        folder_pass: FolderPass,
        is_last: bool,
        result: SyncResult,
        log: logging.LoggerAdapter,
    ) -> None:
        log.debug(f"Syncing {path!r}")

        try:
            async with self.session.lock_folder(path) as lock:
                self._report(SyncState.LOCKED, total_messages=lock.exists, scanned_messages=0)
                await self._sync_locked(lock.exists, folder_pass, result, log)
                if is_last:
                    await self._reconcile(folder_pass, result, log)
        except FolderLockError as e:
            if e.missing:
                log.warning(f"Folder {path!r} no longer exists on server, skipping")
            else:
                log.warning(f"Skipping folder {path!r}: {e}")
            folder_pass.skipped_paths += 1
            result.skipped_folders += 1
            return
        except Exception as e:
            log.error(f"Error syncing folder {path!r}: {e}", exc_info=True)
            folder_pass.skipped_paths += 1
            result.skipped_folders += 1
            self._report(SyncState.UNLOCKED)
            return

        self._report(SyncState.UNLOCKED)

    async def _sync_locked(
        self,
        total: int,
        folder_pass: FolderPass,
        result: SyncResult,
        log: logging.LoggerAdapter,
    ) -> None:
        if total == 0:
            log.debug("Folder is empty")
            return

        folder_pass.has_messages = True
        log.debug(f"Server has {total} messages, {len(folder_pass.local_uids)} stored locally")

        # UIDs stored earlier in this group count as known
        known = set(folder_pass.local_uids) | folder_pass.observed

        scanner = RangeScanner(self.session, self.config.scan_window_size, log=log)
        downloader = MessageDownloader(
            self.session,
            self.repo,
            self.account,
            folder_pass.folder,
            chunk_size=self.config.download_chunk_size,
            parser=self.parser,
            log=log,
        )

        folder_stats = DownloadStats()
        async for window in scanner.scan(total, known):
            self._report(SyncState.SCANNED, scanned_messages=window.end)
            if not window.candidates:
                continue

            log.info(f"{len(window.candidates)} new messages in {window.seq_range}")
            stats = await downloader.download(window.candidates)
            folder_stats += stats
            result.new_messages += stats.saved
            result.placeholders += stats.placeholders
            result.failed_chunks += stats.failed_chunks
            self._report(SyncState.DOWNLOADED, new_messages=result.new_messages)

        folder_pass.observed |= scanner.observed
        folder_pass.failed_windows += scanner.failed_windows
        result.failed_windows += scanner.failed_windows

        if folder_stats.saved or folder_stats.placeholders:
            log.info(
                f"Stored {folder_stats.saved} new messages "
                f"and {folder_stats.placeholders} placeholders"
            )

    async def _reconcile(
        self,
        folder_pass: FolderPass,
        result: SyncResult,
        log: logging.LoggerAdapter,
    ) -> None:
        if not folder_pass.has_messages:
            # An empty listing is not trusted to wipe the folder
            return
        if folder_pass.skipped_paths:
            log.warning(
                f"{folder_pass.skipped_paths} server folders skipped, "
                f"skipping orphan removal until the next complete run"
            )
            return
        if folder_pass.failed_windows and not self.config.reconcile_on_partial_scan:
            log.warning(
                f"{folder_pass.failed_windows} scan windows failed, "
                f"skipping orphan removal until the next complete scan"
            )
            return

        deleted = await reconcile_orphans(
            self.repo,
            self.account.id,
            folder_pass.folder,
            folder_pass.local_uids,
            folder_pass.observed,
            log=log,
        )
        result.deleted_messages += deleted
        self._report(SyncState.RECONCILED, deleted_messages=result.deleted_messages)
