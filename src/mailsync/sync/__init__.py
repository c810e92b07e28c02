# =============================================================================
# Sync Module
# =============================================================================
# The mailbox sync core:
#   - Canonical folder mapping (folders.py)
#   - Best-effort quota inspection (quota.py)
#   - Windowed UID/FLAGS scanning (scanner.py)
#   - Chunked message download with placeholders (downloader.py)
#   - Orphan reconciliation (reconciler.py)
#   - The per-account orchestrator (manager.py)
#   - One-shot remote actions outside a sync run (actions.py)
# =============================================================================

from mailsync.sync.actions import (
    ActionResult,
    check_connection,
    delete_remote_message,
    set_remote_flag,
)
from mailsync.sync.downloader import DownloadStats, MessageDownloader
from mailsync.sync.folders import (
    build_folder_map,
    group_folder_map,
    map_folder,
    resolve_server_path,
)
from mailsync.sync.manager import SyncManager, SyncProgress, SyncResult, SyncState
from mailsync.sync.quota import QuotaReport, inspect_quota
from mailsync.sync.reconciler import find_orphans, reconcile_orphans
from mailsync.sync.scanner import RangeScanner, ScanWindow

__all__ = [
    # Orchestration
    "SyncManager",
    "SyncProgress",
    "SyncResult",
    "SyncState",
    # Components
    "map_folder",
    "build_folder_map",
    "group_folder_map",
    "resolve_server_path",
    "inspect_quota",
    "QuotaReport",
    "RangeScanner",
    "ScanWindow",
    "MessageDownloader",
    "DownloadStats",
    "find_orphans",
    "reconcile_orphans",
    # Remote actions
    "ActionResult",
    "check_connection",
    "delete_remote_message",
    "set_remote_flag",
]
