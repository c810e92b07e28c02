# =============================================================================
# Orphan Reconciliation
# =============================================================================
# Removes local records whose UID the server no longer reports for the
# folder (deleted or moved away on another client).
#
# The observed set must be complete: a UID missing because its scan window
# failed is indistinguishable from a deleted one. The orchestrator only
# calls this after a clean scan unless configured otherwise.
# =============================================================================

import logging
from typing import Collection, Iterable

from mailsync.storage.repository import Repository

logger = logging.getLogger(__name__)


def find_orphans(local_uids: Iterable[int], observed: Collection[int]) -> list[int]:
    """Local UIDs not present in the observed set, ascending."""
    return sorted(uid for uid in set(local_uids) if uid not in observed)


async def reconcile_orphans(
    repo: Repository,
    account_id: int,
    folder: str,
    local_uids: Iterable[int],
    observed: Collection[int],
    *,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> int:
    """
    Delete local records with no remote counterpart.

    Args:
        repo: Storage repository.
        account_id: Account the folder belongs to.
        folder: Canonical folder name.
        local_uids: UIDs stored locally before this run's downloads.
        observed: Every UID the server reported for the folder this run.

    Returns:
        Number of records deleted.
    """
    log = log or logger

    orphans = find_orphans(local_uids, observed)
    if not orphans:
        return 0

    log.info(f"Removing {len(orphans)} messages deleted on the server")
    return await repo.delete_messages_by_uids(account_id, folder, orphans)
